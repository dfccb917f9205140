"""Table exporter: reads schema tables as generic JSON rows.

Usage:
    from tenant_backup.backup.exporter import TableExporter

    exporter = TableExporter(adapter, PLATFORM_SCHEMA)
    rows = await exporter.export("roles", tenant_id="t-1")
    rows_by_table, failed = await exporter.export_all(tenant_id=None)
"""

import json
import logging
from typing import Any

from sqlalchemy.exc import DBAPIError

from tenant_backup.adapters.base import DatabaseClient
from tenant_backup.backup.coercion import to_json_value
from tenant_backup.backup.errors import TableExportError
from tenant_backup.backup.models import BackupSchema, ScopeStrategy, TableDef
from tenant_backup.backup.scoping import scope_clause, select_sql

logger = logging.getLogger(__name__)

SENSITIVE_SETTING_PREFIXES = ("email_", "payment_")
SENSITIVE_SETTING_KEYS = frozenset({
    "storage_s3_access_key",
    "storage_s3_secret_key",
    "jwt_secret",
})

GenericRow = dict[str, Any]


def is_sensitive_setting_key(key: str) -> bool:
    """Whether a settings key holds a credential that tenant backups must not carry."""
    return key.startswith(SENSITIVE_SETTING_PREFIXES) or key in SENSITIVE_SETTING_KEYS


def redact_settings_rows(rows: list[GenericRow]) -> list[GenericRow]:
    """Clear the ``value`` of sensitive settings rows (in place)."""
    for row in rows:
        key = row.get("key")
        if isinstance(key, str) and is_sensitive_setting_key(key) and "value" in row:
            row["value"] = ""
    return rows


class TableExporter:
    """Export tables of a ``BackupSchema`` as lists of generic rows.

    Postgres renders each row natively with ``row_to_json``; other
    dialects fall back to per-value sniffing with ``to_json_value``.
    """

    def __init__(self, adapter: DatabaseClient, schema: BackupSchema) -> None:
        self._adapter = adapter
        self._schema = schema

    def is_exported(self, table_def: TableDef, tenant_id: str | None) -> bool:
        """Whether a table belongs in a backup of the given scope."""
        if tenant_id is None:
            return True
        if table_def.scope is ScopeStrategy.GLOBAL or not table_def.tenant_export:
            return False
        return scope_clause(self._schema, table_def) is not None

    async def export(self, table_name: str, tenant_id: str | None = None) -> list[GenericRow]:
        """Export one table, optionally restricted to a tenant.

        Args:
            table_name: Table declared in the schema.
            tenant_id: Tenant to scope to; ``None`` exports every row.

        Returns:
            Rows as column-name to JSON-value dicts.  Tables excluded from
            the tenant scope return an empty list.

        Raises:
            TableExportError: If the table is unknown or its query fails.
        """
        table_def = self._schema.get(table_name)
        if table_def is None:
            raise TableExportError(table_name, "table is not declared in the backup schema")
        if not self.is_exported(table_def, tenant_id):
            return []

        clause = scope_clause(self._schema, table_def) if tenant_id is not None else None
        params = {"tenant_id": tenant_id} if clause else {}

        try:
            if self._adapter.dialect == "postgresql":
                rows = await self._fetch_native(table_def, clause, params)
            else:
                rows = await self._fetch_sniffed(table_def, clause, params)
        except DBAPIError as e:
            raise TableExportError(table_name, str(e.orig or e)) from e

        if tenant_id is not None and table_def.redact_secrets:
            redact_settings_rows(rows)

        logger.debug(f"Exported {len(rows)} row(s) from {table_name}")
        return rows

    async def export_all(
        self,
        tenant_id: str | None = None,
        skip_failed_tables: bool | None = None,
    ) -> tuple[dict[str, list[GenericRow]], list[str]]:
        """Export every table in restore order.

        Args:
            tenant_id: Tenant to scope to; ``None`` for a global backup.
            skip_failed_tables: Continue past a failing table.  Defaults to
                ``True`` for global backups and ``False`` for tenant backups.

        Returns:
            Tuple of (rows by table name, names of tables that failed).

        Raises:
            TableExportError: If a table fails and failures are not skipped.
        """
        if skip_failed_tables is None:
            skip_failed_tables = tenant_id is None

        rows_by_table: dict[str, list[GenericRow]] = {}
        failed: list[str] = []

        for table_name in self._schema.restore_order:
            try:
                rows_by_table[table_name] = await self.export(table_name, tenant_id)
            except TableExportError as e:
                if not skip_failed_tables:
                    raise
                logger.warning(f"Skipping table in backup: {e}")
                failed.append(table_name)

        return rows_by_table, failed

    # ------------------------------------------------------------------
    # Query Helpers
    # ------------------------------------------------------------------

    async def _fetch_native(
        self, table_def: TableDef, clause: str | None, params: dict
    ) -> list[GenericRow]:
        sql = f"SELECT row_to_json(t) AS row FROM ({select_sql(table_def.name, clause)}) AS t"
        records = await self._adapter.fetch(sql, params)
        rows: list[GenericRow] = []
        for record in records:
            value = record["row"]
            # asyncpg hands json back as text
            rows.append(json.loads(value) if isinstance(value, str) else dict(value))
        return rows

    async def _fetch_sniffed(
        self, table_def: TableDef, clause: str | None, params: dict
    ) -> list[GenericRow]:
        records = await self._adapter.fetch(select_sql(table_def.name, clause), params)
        return [
            {column: to_json_value(value, column) for column, value in record.items()}
            for record in records
        ]
