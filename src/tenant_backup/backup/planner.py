"""Restore planner: reads an archive fully into memory and plans the restore.

Nothing here touches the database.  A corrupt archive fails in ``plan``
before any row is deleted.

Usage:
    from tenant_backup.backup.planner import RestorePlanner

    plan = RestorePlanner(PLATFORM_SCHEMA).plan(path, target_tenant_id="t-1")
    plan.ordered_tables      # tables to insert, parents first
    plan.tenant_scope        # allow-lists for junction tables
"""

import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from tenant_backup.backup.errors import ArchiveReadError
from tenant_backup.backup.models import BackupSchema, ScopeStrategy

logger = logging.getLogger(__name__)

# Never restored from a tenant archive, whatever the archive contains.
TENANT_RESTORE_PROTECTED = frozenset({
    "permissions",
    "features",
    "plans",
    "plan_features",
    "bank_accounts",
    "fx_rates",
    "tenants",
    "users",
    "tenant_subscriptions",
    "invoices",
    "trusted_devices",
    "email_outbox",
})


@dataclass
class TenantScopeContext:
    """Allow-lists derived from the archive for one tenant restore."""

    target_tenant_id: str
    allowed_role_ids: set[str] = field(default_factory=set)
    allowed_user_ids: set[str] = field(default_factory=set)


@dataclass
class RestorePlan:
    """Everything the executor needs, decided before any mutation."""

    archive_name: str
    ordered_tables: list[str]
    table_data: dict[str, list[dict[str, Any]]]
    cleanup_tables: list[str]
    tenant_scope: TenantScopeContext | None = None
    skipped_tables: list[str] = field(default_factory=list)

    @property
    def is_tenant_restore(self) -> bool:
        return self.tenant_scope is not None


def _as_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def read_archive(archive_path: str | Path) -> dict[str, list[dict[str, Any]]]:
    """Decode every ``<table>.json`` entry of an archive.

    Entries that are not ``.json`` files are ignored.

    Raises:
        ArchiveReadError: If the file is not a readable ZIP, or any entry is
            not UTF-8 JSON holding an array of objects.
    """
    path = Path(archive_path)
    documents: dict[str, list[dict[str, Any]]] = {}
    try:
        with zipfile.ZipFile(path) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                entry = PurePosixPath(info.filename)
                if entry.suffix != ".json":
                    continue
                table_name = entry.stem
                try:
                    data = json.loads(archive.read(info).decode("utf-8"))
                except (UnicodeDecodeError, ValueError) as e:
                    raise ArchiveReadError(f"Invalid JSON in {info.filename}: {e}") from e
                if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
                    raise ArchiveReadError(f"{info.filename} is not a JSON array of objects")
                documents[table_name] = data
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as e:
        raise ArchiveReadError(f"Cannot read archive {path.name}: {e}") from e
    return documents


class RestorePlanner:
    """Turn an archive into a ``RestorePlan`` for a ``BackupSchema``."""

    def __init__(self, schema: BackupSchema) -> None:
        self._schema = schema

    def is_protected(self, table_name: str) -> bool:
        """Whether a tenant restore must leave this table alone."""
        if table_name in TENANT_RESTORE_PROTECTED:
            return True
        table_def = self._schema.get(table_name)
        return table_def is not None and table_def.scope is ScopeStrategy.GLOBAL

    def plan(self, archive_path: str | Path, target_tenant_id: str | None = None) -> RestorePlan:
        """Read the archive and decide tables, order and tenant allow-lists.

        Raises:
            ArchiveReadError: If the archive cannot be decoded.
        """
        documents = read_archive(archive_path)
        schema = self._schema

        skipped: list[str] = []
        for table_name in documents:
            if table_name not in schema:
                logger.warning(f"Archive table {table_name} is not in the backup schema; skipping")
                skipped.append(table_name)
            elif target_tenant_id is not None and self.is_protected(table_name):
                skipped.append(table_name)

        ordered = [
            name for name in schema.restore_order
            if name in documents and name not in skipped
        ]
        table_data = {name: documents[name] for name in ordered}

        if target_tenant_id is None:
            cleanup = schema.cleanup_order
            tenant_scope = None
        else:
            cleanup = [
                name for name in schema.cleanup_order
                if not self.is_protected(name)
                and (schema.get(name).tenant_export or name in documents)
            ]
            tenant_scope = self._tenant_scope(documents, target_tenant_id)

        return RestorePlan(
            archive_name=Path(archive_path).name,
            ordered_tables=ordered,
            table_data=table_data,
            cleanup_tables=cleanup,
            tenant_scope=tenant_scope,
            skipped_tables=skipped,
        )

    def _tenant_scope(
        self, documents: dict[str, list[dict[str, Any]]], tenant_id: str
    ) -> TenantScopeContext:
        schema = self._schema
        scope = TenantScopeContext(target_tenant_id=tenant_id)

        role_def = schema.get(schema.role_table)
        if role_def is not None:
            for row in documents.get(role_def.name, []):
                if _as_id(row.get(role_def.tenant_field)) == tenant_id:
                    role_id = _as_id(row.get(role_def.pk))
                    if role_id:
                        scope.allowed_role_ids.add(role_id)

        member_def = schema.get(schema.membership_table)
        if member_def is not None:
            for row in documents.get(member_def.name, []):
                if _as_id(row.get(member_def.tenant_field)) == tenant_id:
                    user_id = _as_id(row.get(member_def.user_field))
                    if user_id:
                        scope.allowed_user_ids.add(user_id)

        return scope
