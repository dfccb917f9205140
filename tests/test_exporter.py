"""Tests for table export, tenant scoping and secret redaction."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tenant_backup.backup.errors import TableExportError
from tenant_backup.backup.exporter import TableExporter, is_sensitive_setting_key
from tenant_backup.backup.models import BackupSchema, ScopeStrategy, TableDef


# ------------------------------------------------------------------
# Single table
# ------------------------------------------------------------------


class TestExport:
    """Rows come back as plain JSON values."""

    async def test_global_export_returns_every_row(self, seeded_client, mini_schema):
        rows = await TableExporter(seeded_client, mini_schema).export("roles")
        assert rows == [
            {"id": "r1", "tenant_id": "t1", "name": "Admin"},
            {"id": "r2", "tenant_id": "t2", "name": "Admin"},
        ]

    async def test_tenant_column_scope(self, seeded_client, mini_schema):
        rows = await TableExporter(seeded_client, mini_schema).export("roles", tenant_id="t1")
        assert [r["id"] for r in rows] == ["r1"]

    async def test_parent_scope(self, seeded_client, mini_schema):
        exporter = TableExporter(seeded_client, mini_schema)
        assert [r["id"] for r in await exporter.export("role_permissions", "t2")] == ["rp2"]
        assert [r["id"] for r in await exporter.export("support_ticket_messages", "t1")] == ["sm1"]

    async def test_membership_scope(self, seeded_client, mini_schema):
        rows = await TableExporter(seeded_client, mini_schema).export(
            "notification_preferences", tenant_id="t1"
        )
        assert [r["id"] for r in rows] == ["np1"]

    async def test_tenant_export_redacts_secrets(self, seeded_client, mini_schema):
        rows = await TableExporter(seeded_client, mini_schema).export("settings", tenant_id="t1")
        values = {r["key"]: r["value"] for r in rows}
        assert values == {"theme": "dark", "email_smtp_password": ""}

    async def test_global_export_keeps_secrets(self, seeded_client, mini_schema):
        rows = await TableExporter(seeded_client, mini_schema).export("settings")
        assert {r["key"]: r["value"] for r in rows if r["tenant_id"] == "t1"} == {
            "theme": "dark",
            "email_smtp_password": "hunter2",
        }

    @pytest.mark.parametrize("table", ["tenants", "users", "audit_logs"])
    async def test_tables_outside_tenant_scope_are_empty(self, seeded_client, mini_schema, table):
        exporter = TableExporter(seeded_client, mini_schema)
        assert await exporter.export(table, tenant_id="t1") == []
        assert await exporter.export(table) != []

    async def test_unknown_table(self, seeded_client, mini_schema):
        with pytest.raises(TableExportError, match="not declared"):
            await TableExporter(seeded_client, mini_schema).export("widgets")

    async def test_query_failure(self, client):
        schema = BackupSchema(tables=[TableDef(name="widgets", scope=ScopeStrategy.GLOBAL)])
        with pytest.raises(TableExportError, match="Failed to export widgets") as exc_info:
            await TableExporter(client, schema).export("widgets")
        assert exc_info.value.table == "widgets"


class TestNativeExport:
    """On Postgres every row is rendered by ``row_to_json``."""

    async def test_row_to_json_query(self, mini_schema):
        adapter = MagicMock()
        adapter.dialect = "postgresql"
        adapter.fetch = AsyncMock(return_value=[
            {"row": '{"id": "r1", "tenant_id": "t1", "metadata": {"a": 1}}'},
            {"row": {"id": "r3", "tenant_id": "t1", "metadata": None}},
        ])

        rows = await TableExporter(adapter, mini_schema).export("roles", tenant_id="t1")

        assert rows == [
            {"id": "r1", "tenant_id": "t1", "metadata": {"a": 1}},
            {"id": "r3", "tenant_id": "t1", "metadata": None},
        ]
        adapter.fetch.assert_awaited_once_with(
            'SELECT row_to_json(t) AS row FROM (SELECT * FROM "roles" '
            'WHERE CAST("tenant_id" AS TEXT) = :tenant_id) AS t',
            {"tenant_id": "t1"},
        )


# ------------------------------------------------------------------
# Whole schema
# ------------------------------------------------------------------


class TestExportAll:
    """Failure policy differs between global and tenant backups."""

    @pytest.fixture
    def broken_schema(self):
        return BackupSchema(tables=[
            TableDef(name="tenants", scope=ScopeStrategy.GLOBAL),
            TableDef(name="widgets", depends_on=["tenants"]),
            TableDef(name="roles", depends_on=["tenants"]),
        ])

    async def test_restore_order_and_tenant_filter(self, seeded_client, mini_schema):
        rows, failed = await TableExporter(seeded_client, mini_schema).export_all("t1")

        assert failed == []
        assert list(rows) == mini_schema.restore_order
        assert rows["tenants"] == []
        assert [r["id"] for r in rows["tenant_members"]] == ["m1", "m2"]

    async def test_global_skips_failed_tables(self, seeded_client, broken_schema):
        rows, failed = await TableExporter(seeded_client, broken_schema).export_all()

        assert failed == ["widgets"]
        assert "widgets" not in rows
        assert [r["id"] for r in rows["roles"]] == ["r1", "r2"]

    async def test_tenant_aborts_on_failed_table(self, seeded_client, broken_schema):
        with pytest.raises(TableExportError, match="widgets"):
            await TableExporter(seeded_client, broken_schema).export_all("t1")

    async def test_skip_policy_override(self, seeded_client, broken_schema):
        _, failed = await TableExporter(seeded_client, broken_schema).export_all(
            "t1", skip_failed_tables=True
        )
        assert failed == ["widgets"]


@pytest.mark.parametrize(
    ("key", "sensitive"),
    [
        ("email_smtp_password", True),
        ("payment_stripe_secret", True),
        ("storage_s3_secret_key", True),
        ("jwt_secret", True),
        ("theme", False),
        ("backup_enabled", False),
    ],
)
def test_is_sensitive_setting_key(key, sensitive):
    assert is_sensitive_setting_key(key) is sensitive
