"""Backup schema models: declarative table graph and restore results.

Projects declare their tables, how each one is scoped to a tenant, and the
foreign-key edges between tables.  The restore order is a topological sort
of those edges, computed once when the schema is built.

Usage:
    from tenant_backup.backup.models import BackupSchema, TableDef, ForeignKey, ScopeStrategy

    schema = BackupSchema(tables=[
        TableDef(name="tenants", scope=ScopeStrategy.GLOBAL),
        TableDef(name="users", scope=ScopeStrategy.GLOBAL),
        TableDef(name="roles", depends_on=["tenants"]),
        TableDef(name="tenant_members", depends_on=["tenants", "users", "roles"]),
        TableDef(name="role_permissions", scope=ScopeStrategy.PARENT,
                 parent=ForeignKey(table="roles", field="role_id"),
                 role_field="role_id"),
    ])
    schema.restore_order
    # ['tenants', 'users', 'roles', 'tenant_members', 'role_permissions']
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, PrivateAttr, model_validator

from tenant_backup.backup.errors import SchemaDefinitionError


# ============================================================================
# Schema Models
# ============================================================================


class ScopeStrategy(str, Enum):
    """How a table's rows are attributed to a tenant."""

    TENANT_COLUMN = "tenant_column"    # direct tenant id column
    TENANT_MEMBERS = "tenant_members"  # user column joined through membership
    PARENT = "parent"                  # FK into another tenant-scoped table
    GLOBAL = "global"                  # platform data, never part of a tenant


class ForeignKey(BaseModel):
    """Foreign key reference to a parent table."""

    table: str          # parent table name
    field: str          # FK column in this table


class TableDef(BaseModel):
    """Definition of a table for backup/restore operations."""

    name: str                                       # table name
    pk: str = "id"                                  # primary key column
    scope: ScopeStrategy = ScopeStrategy.TENANT_COLUMN
    tenant_field: str = "tenant_id"                 # tenant column (TENANT_COLUMN scope)
    user_field: str = "user_id"                     # user column (TENANT_MEMBERS scope)
    parent: ForeignKey | None = None                # scoping parent (PARENT scope)
    depends_on: list[str] = Field(default_factory=list)  # other FK targets
    role_field: str | None = None                   # junction column checked against tenant roles
    role_refs: list[str] = Field(default_factory=list)   # role columns that must name a tenant role when set
    user_refs: list[str] = Field(default_factory=list)   # user columns nulled outside the tenant
    not_null_text: list[str] = Field(default_factory=list)  # NOT NULL text columns ("" instead of NULL)
    best_effort: bool = False                       # FK violations skip the row on tenant restore
    tenant_export: bool = True                      # included in tenant backups
    redact_secrets: bool = False                    # clear sensitive setting values on tenant export

    @model_validator(mode="after")
    def _check_parent(self) -> "TableDef":
        if self.scope is ScopeStrategy.PARENT and self.parent is None:
            raise ValueError(f"Table '{self.name}' uses PARENT scope without a parent")
        return self

    @property
    def dependencies(self) -> set[str]:
        """Tables this table references (parent + declared edges)."""
        deps = set(self.depends_on)
        if self.parent is not None:
            deps.add(self.parent.table)
        deps.discard(self.name)
        return deps


class BackupSchema(BaseModel):
    """Declarative backup schema: tables plus the FK graph between them.

    Table order in ``tables`` does not matter for correctness; it only
    breaks ties in the topological sort.
    """

    tables: list[TableDef]
    membership_table: str = "tenant_members"   # rows linking users to tenants
    role_table: str = "roles"                   # tenant-owned roles
    user_table: str = "users"                   # platform users
    session_tables: list[str] = Field(default_factory=list)  # wiped on global restore

    _by_name: dict[str, TableDef] = PrivateAttr(default_factory=dict)
    _restore_order: list[str] = PrivateAttr(default_factory=list)

    @model_validator(mode="after")
    def _build_graph(self) -> "BackupSchema":
        by_name: dict[str, TableDef] = {}
        for table_def in self.tables:
            if table_def.name in by_name:
                raise SchemaDefinitionError(f"Duplicate table definition: {table_def.name}")
            by_name[table_def.name] = table_def

        graph: dict[str, set[str]] = {}
        for table_def in self.tables:
            deps = table_def.dependencies
            if (
                table_def.scope is ScopeStrategy.TENANT_MEMBERS
                and self.membership_table in by_name
                and table_def.name != self.membership_table
            ):
                # membership-scoped cleanup reads the membership table
                deps.add(self.membership_table)
            unknown = deps - by_name.keys()
            if unknown:
                raise SchemaDefinitionError(
                    f"Table '{table_def.name}' references undeclared table(s): "
                    f"{', '.join(sorted(unknown))}"
                )
            graph[table_def.name] = deps

        self._by_name = by_name
        self._restore_order = _topological_sort(graph, [t.name for t in self.tables])
        return self

    @property
    def restore_order(self) -> list[str]:
        """Tables with parents before children (insert order)."""
        return list(self._restore_order)

    @property
    def cleanup_order(self) -> list[str]:
        """Tables with children before parents (delete order)."""
        return list(reversed(self._restore_order))

    def get(self, table_name: str) -> TableDef | None:
        """Find a TableDef by name."""
        return self._by_name.get(table_name)

    def __contains__(self, table_name: object) -> bool:
        return table_name in self._by_name


def _topological_sort(dependencies: dict[str, set[str]], tables: list[str]) -> list[str]:
    """Topological sort of tables based on FK dependencies.

    Returns tables in forward order: parent tables first, child tables last.
    Ties keep the order of ``tables``.

    Raises:
        SchemaDefinitionError: If the graph contains a cycle.
    """
    sorted_tables: list[str] = []
    visited: set[str] = set()
    visiting: list[str] = []  # current DFS path, for cycle reporting

    def visit(table: str) -> None:
        if table in visited:
            return
        if table in visiting:
            cycle = visiting[visiting.index(table):] + [table]
            raise SchemaDefinitionError(f"Foreign key cycle: {' -> '.join(cycle)}")
        visiting.append(table)
        for dep in sorted(dependencies.get(table, set()), key=tables.index):
            visit(dep)
        visiting.pop()
        visited.add(table)
        sorted_tables.append(table)

    for table in tables:
        visit(table)

    return sorted_tables


# ============================================================================
# Catalog Models
# ============================================================================


class BackupKind(str, Enum):
    """Backup kind; decides directory layout and compression."""

    GLOBAL = "global"
    TENANT = "tenant"


class BackupRecord(BaseModel):
    """One archive file on disk."""

    name: str
    path: str
    size: int
    created_at: datetime
    backup_type: BackupKind
    tenant_id: str | None = None


# ============================================================================
# Restore Result Models
# ============================================================================


class RowStatus(str, Enum):
    """Outcome of restoring a single row."""

    INSERTED = "inserted"
    SKIPPED = "skipped"
    FATAL = "fatal"


class SkipReason(str, Enum):
    """Why a row was dropped without aborting the restore."""

    FOREIGN_TENANT = "foreign_tenant"                # row tagged with another tenant
    OUTSIDE_SCOPE = "outside_scope"                  # FK outside the tenant allow-list
    ENCODING_ERROR = "encoding_error"                # text invalid for the database encoding
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"  # on a best-effort table


class RowOutcome(BaseModel):
    """Result of one row: Inserted, Skipped{reason} or Fatal."""

    status: RowStatus
    reason: SkipReason | None = None
    detail: str = ""

    @classmethod
    def inserted(cls) -> "RowOutcome":
        return cls(status=RowStatus.INSERTED)

    @classmethod
    def skipped(cls, reason: SkipReason, detail: str = "") -> "RowOutcome":
        return cls(status=RowStatus.SKIPPED, reason=reason, detail=detail)

    @classmethod
    def fatal(cls, detail: str) -> "RowOutcome":
        return cls(status=RowStatus.FATAL, detail=detail)


class TableRestoreSummary(BaseModel):
    """Per-table counts accumulated during the insert pass."""

    table: str
    inserted: int = 0
    skipped: dict[SkipReason, int] = Field(default_factory=dict)

    def record(self, outcome: RowOutcome) -> None:
        """Count a non-fatal outcome."""
        if outcome.status is RowStatus.INSERTED:
            self.inserted += 1
        elif outcome.status is RowStatus.SKIPPED and outcome.reason is not None:
            self.skipped[outcome.reason] = self.skipped.get(outcome.reason, 0) + 1

    @property
    def skipped_count(self) -> int:
        return sum(self.skipped.values())


class RestoreReport(BaseModel):
    """Structured summary returned by a committed restore."""

    archive: str
    target_tenant_id: str | None = None
    tables: dict[str, TableRestoreSummary] = Field(default_factory=dict)
    skipped_tables: list[str] = Field(default_factory=list)
    committed: bool = False

    @property
    def total_inserted(self) -> int:
        return sum(t.inserted for t in self.tables.values())

    @property
    def total_skipped(self) -> int:
        """Rows dropped without aborting (0 means a clean restore)."""
        return sum(t.skipped_count for t in self.tables.values())

    def format_report(self) -> str:
        """Format the report as human-readable text."""
        scope = f"tenant {self.target_tenant_id}" if self.target_tenant_id else "global"
        lines = [f"Restore ({scope}) from {self.archive}"]
        for name, summary in self.tables.items():
            line = f"  {name}: {summary.inserted} inserted"
            if summary.skipped:
                reasons = ", ".join(
                    f"{reason.value}={count}" for reason, count in summary.skipped.items()
                )
                line += f", {summary.skipped_count} skipped ({reasons})"
            lines.append(line)
        if self.skipped_tables:
            lines.append(f"  Skipped tables: {', '.join(self.skipped_tables)}")
        return "\n".join(lines)
