"""Restore executor: replays a ``RestorePlan`` inside one transaction.

State machine:

1. Pre-flight (tenant restores only, before the transaction): every user
   referenced by the archived membership rows must already exist.
2. Cleanup: delete stale rows in reverse restore order.
3. Insert pass: insert archived rows in restore order, one savepoint per
   row.  Recoverable row failures are rolled back to the savepoint and
   counted; anything else aborts the transaction.
4. Commit.

Usage:
    from tenant_backup.backup.executor import RestoreExecutor

    report = await RestoreExecutor(adapter, PLATFORM_SCHEMA).execute(plan)
    print(report.format_report())
"""

import json
import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import DBAPIError

from tenant_backup.adapters.base import DatabaseClient, Transaction
from tenant_backup.backup.coercion import coerce_value
from tenant_backup.backup.errors import RestoreAbortedError, TenantRestoreBlockedError
from tenant_backup.backup.models import (
    BackupSchema,
    RestoreReport,
    RowOutcome,
    RowStatus,
    ScopeStrategy,
    SkipReason,
    TableDef,
    TableRestoreSummary,
)
from tenant_backup.backup.planner import RestorePlan, TenantScopeContext
from tenant_backup.backup.scoping import delete_sql, quote_ident, scope_clause

logger = logging.getLogger(__name__)

ENCODING_ERROR_MARKERS = (
    "invalid byte sequence for encoding",
    "character with byte sequence",
)
FOREIGN_KEY_VIOLATION_SQLSTATE = "23503"

# Missing user ids quoted in a blocked-restore message
MISSING_USER_EXAMPLES = 10


def _as_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


# ============================================================================
# Statement building
# ============================================================================


def _portable_value(value: Any, cast: str | None) -> Any:
    """Bind value for dialects without Postgres casts."""
    if cast == "jsonb":
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def build_insert_statement(
    table_def: TableDef,
    row: dict[str, Any],
    dialect: str = "postgresql",
) -> tuple[str, dict[str, Any]]:
    """Build a parameterized INSERT with every value run through ``coerce_value``.

    Returns:
        Tuple of (SQL text with ``:pN`` parameters, parameter dict).

    Example:
        sql, params = build_insert_statement(table_def, {"id": None, "name": "Ops"})
        # INSERT INTO "roles" ("id", "name") VALUES (CAST(:p0 AS uuid), :p1)
    """
    table = quote_ident(table_def.name)
    if not row:
        return f"INSERT INTO {table} DEFAULT VALUES", {}

    columns: list[str] = []
    placeholders: list[str] = []
    params: dict[str, Any] = {}

    for i, (column, raw) in enumerate(row.items()):
        bound = coerce_value(column, raw, table_def.not_null_text)
        name = f"p{i}"
        columns.append(quote_ident(column))
        if dialect == "postgresql":
            if bound.cast == "jsonb":
                params[name] = json.dumps(bound.value, ensure_ascii=False)
            else:
                params[name] = bound.value
            placeholders.append(f"CAST(:{name} AS {bound.cast})" if bound.cast else f":{name}")
        else:
            params[name] = _portable_value(bound.value, bound.cast)
            placeholders.append(f":{name}")

    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)})"
    return sql, params


# ============================================================================
# Row classification
# ============================================================================


def _error_message(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc)


def is_encoding_error(exc: BaseException) -> bool:
    """Whether a failed insert was caused by text invalid for the database encoding."""
    if isinstance(exc, UnicodeError):
        return True
    message = _error_message(exc)
    return any(marker in message for marker in ENCODING_ERROR_MARKERS)


def is_foreign_key_violation(exc: BaseException) -> bool:
    """Whether a failed insert was a foreign-key violation."""
    orig = getattr(exc, "orig", None)
    for source in (orig, exc):
        sqlstate = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if sqlstate == FOREIGN_KEY_VIOLATION_SQLSTATE:
            return True
    return "foreign key" in _error_message(exc).lower()


def classify_failure(exc: BaseException, table_def: TableDef, tenant_restore: bool) -> RowOutcome:
    """Map an insert failure to a skip or a fatal outcome."""
    detail = _error_message(exc)
    if is_encoding_error(exc):
        return RowOutcome.skipped(SkipReason.ENCODING_ERROR, detail)
    if tenant_restore and table_def.best_effort and is_foreign_key_violation(exc):
        return RowOutcome.skipped(SkipReason.FOREIGN_KEY_VIOLATION, detail)
    return RowOutcome.fatal(detail)


def scope_row(
    table_def: TableDef,
    row: dict[str, Any],
    scope: TenantScopeContext,
    restored_ids: dict[str, set[str]],
) -> tuple[dict[str, Any], RowOutcome | None]:
    """Apply tenant isolation to one archived row.

    Returns:
        Tuple of (row to insert, skip outcome or ``None``).  The input row
        is not modified.
    """
    row = dict(row)
    target = scope.target_tenant_id

    if table_def.scope is ScopeStrategy.TENANT_COLUMN:
        archived = _as_id(row.get(table_def.tenant_field))
        if archived and archived != target:
            return row, RowOutcome.skipped(
                SkipReason.FOREIGN_TENANT, f"{table_def.tenant_field}={archived}"
            )
        row[table_def.tenant_field] = target
    elif table_def.tenant_field in row:
        row[table_def.tenant_field] = target

    if table_def.role_field is not None:
        role_id = _as_id(row.get(table_def.role_field))
        if role_id not in scope.allowed_role_ids:
            return row, RowOutcome.skipped(
                SkipReason.OUTSIDE_SCOPE, f"{table_def.role_field}={role_id or 'null'}"
            )

    for column in table_def.role_refs:
        role_id = _as_id(row.get(column))
        if role_id and role_id not in scope.allowed_role_ids:
            return row, RowOutcome.skipped(SkipReason.OUTSIDE_SCOPE, f"{column}={role_id}")

    if table_def.scope is ScopeStrategy.TENANT_MEMBERS:
        user_id = _as_id(row.get(table_def.user_field))
        if user_id not in scope.allowed_user_ids:
            return row, RowOutcome.skipped(
                SkipReason.OUTSIDE_SCOPE, f"{table_def.user_field}={user_id or 'null'}"
            )

    if table_def.scope is ScopeStrategy.PARENT and table_def.parent is not None:
        # children may only hang off parents restored for this tenant
        parent_id = _as_id(row.get(table_def.parent.field))
        if parent_id not in restored_ids.get(table_def.parent.table, set()):
            return row, RowOutcome.skipped(
                SkipReason.OUTSIDE_SCOPE, f"{table_def.parent.field}={parent_id or 'null'}"
            )

    for column in table_def.user_refs:
        user_id = _as_id(row.get(column))
        if user_id and user_id not in scope.allowed_user_ids:
            row[column] = None

    return row, None


# ============================================================================
# Executor
# ============================================================================


class RestoreExecutor:
    """Execute a ``RestorePlan`` against a database in one transaction."""

    def __init__(self, adapter: DatabaseClient, schema: BackupSchema) -> None:
        self._adapter = adapter
        self._schema = schema

    async def execute(self, plan: RestorePlan) -> RestoreReport:
        """Run cleanup and the insert pass, then commit.

        Returns:
            ``RestoreReport`` with per-table insert and skip counts.

        Raises:
            TenantRestoreBlockedError: If membership rows reference users
                missing from the database (nothing was modified).
            RestoreAbortedError: If any statement fails fatally; the
                transaction is rolled back.
        """
        scope = plan.tenant_scope
        if scope is not None:
            await self.check_members_exist(scope)

        report = RestoreReport(
            archive=plan.archive_name,
            target_tenant_id=scope.target_tenant_id if scope else None,
            skipped_tables=list(plan.skipped_tables),
        )
        kind = f"tenant {scope.target_tenant_id}" if scope else "global"
        logger.info(f"Starting {kind} restore from {plan.archive_name}")

        try:
            async with self._adapter.transaction() as tx:
                if scope is None:
                    await self._cleanup_global(tx, plan)
                else:
                    await self._cleanup_tenant(tx, plan, scope)

                restored_ids: dict[str, set[str]] = {}
                for table_name in plan.ordered_tables:
                    table_def = self._schema.get(table_name)
                    summary = TableRestoreSummary(table=table_name)
                    report.tables[table_name] = summary
                    restored_ids[table_name] = await self._restore_table(
                        tx, table_def, plan.table_data[table_name], scope, restored_ids, summary
                    )
        except RestoreAbortedError:
            raise
        except DBAPIError as e:
            logger.error(f"Restore from {plan.archive_name} aborted: {_error_message(e)}")
            raise RestoreAbortedError(f"Restore failed: {_error_message(e)}") from e

        report.committed = True
        logger.info(
            f"Restore from {plan.archive_name} committed: "
            f"{report.total_inserted} inserted, {report.total_skipped} skipped"
        )
        return report

    async def check_members_exist(self, scope: TenantScopeContext) -> None:
        """Pre-flight: all membership users must exist before a tenant restore."""
        user_ids = sorted(scope.allowed_user_ids)
        if not user_ids:
            return
        user_def = self._schema.get(self._schema.user_table)
        pk = quote_ident(user_def.pk if user_def else "id")
        params = {f"u{i}": user_id for i, user_id in enumerate(user_ids)}
        placeholders = ", ".join(f":{name}" for name in params)
        sql = (
            f"SELECT CAST({pk} AS TEXT) AS id FROM {quote_ident(self._schema.user_table)} "
            f"WHERE CAST({pk} AS TEXT) IN ({placeholders})"
        )
        try:
            rows = await self._adapter.fetch(sql, params)
        except DBAPIError as e:
            raise RestoreAbortedError(f"User pre-flight check failed: {_error_message(e)}") from e

        existing = {_as_id(row["id"]) for row in rows}
        missing = [user_id for user_id in user_ids if user_id not in existing]
        if missing:
            raise TenantRestoreBlockedError(missing[:MISSING_USER_EXAMPLES], len(missing))

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _cleanup_global(self, tx: Transaction, plan: RestorePlan) -> None:
        for table_name in [*plan.cleanup_tables, *self._schema.session_tables]:
            savepoint = await tx.begin_savepoint()
            try:
                await tx.execute(delete_sql(table_name))
            except DBAPIError as e:
                await savepoint.rollback()
                logger.warning(f"Cleanup of {table_name} failed, continuing: {_error_message(e)}")
                continue
            await savepoint.release()

    async def _cleanup_tenant(
        self, tx: Transaction, plan: RestorePlan, scope: TenantScopeContext
    ) -> None:
        params = {"tenant_id": scope.target_tenant_id}
        for table_name in plan.cleanup_tables:
            clause = scope_clause(self._schema, self._schema.get(table_name))
            if clause is None:
                continue
            await tx.execute(delete_sql(table_name, clause), params)

    # ------------------------------------------------------------------
    # Insert pass
    # ------------------------------------------------------------------

    async def _restore_table(
        self,
        tx: Transaction,
        table_def: TableDef,
        rows: list[dict[str, Any]],
        scope: TenantScopeContext | None,
        restored_ids: dict[str, set[str]],
        summary: TableRestoreSummary,
    ) -> set[str]:
        """Insert one table's rows; returns the archived ids that were inserted."""
        inserted_ids: set[str] = set()
        dialect = self._adapter.dialect
        logger.info(f"Restoring table: {table_def.name} ({len(rows)} row(s))")

        for row in rows:
            if scope is not None:
                row, outcome = scope_row(table_def, row, scope, restored_ids)
                if outcome is not None:
                    summary.record(outcome)
                    continue

            outcome = await self._insert_row(tx, table_def, row, dialect, scope is not None)
            if outcome.status is RowStatus.FATAL:
                logger.error(f"Restore aborted at {table_def.name}: {outcome.detail}")
                raise RestoreAbortedError(
                    f"Failed to restore row into {table_def.name}: {outcome.detail}",
                    table=table_def.name,
                )
            if outcome.status is RowStatus.SKIPPED:
                logger.warning(
                    f"Skipped row in {table_def.name} ({outcome.reason.value}): {outcome.detail}"
                )
            else:
                row_id = _as_id(row.get(table_def.pk))
                if row_id:
                    inserted_ids.add(row_id)
            summary.record(outcome)

        return inserted_ids

    async def _insert_row(
        self,
        tx: Transaction,
        table_def: TableDef,
        row: dict[str, Any],
        dialect: str,
        tenant_restore: bool,
    ) -> RowOutcome:
        sql, params = build_insert_statement(table_def, row, dialect)
        savepoint = await tx.begin_savepoint()
        try:
            await tx.execute(sql, params)
        except (DBAPIError, UnicodeError) as e:
            await savepoint.rollback()
            return classify_failure(e, table_def, tenant_restore)
        await savepoint.release()
        return RowOutcome.inserted()
