"""Shared fixtures: an in-memory SQLite ``DatabaseClient`` and a small tenant schema.

``SqliteClient`` implements the adapter Protocol on top of ``sqlite3`` with
real transactions, savepoints and foreign keys, and wraps driver errors
in SQLAlchemy's ``DBAPIError`` family the same way the Postgres adapter
surfaces them.
"""

import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tenant_backup.backup.models import BackupSchema, ForeignKey, ScopeStrategy, TableDef


# ------------------------------------------------------------------
# Test schema
# ------------------------------------------------------------------


MINI_DDL = """
CREATE TABLE tenants (id TEXT PRIMARY KEY, name TEXT, is_active INTEGER DEFAULT 1);
CREATE TABLE users (id TEXT PRIMARY KEY, email TEXT);
CREATE TABLE roles (
    id TEXT PRIMARY KEY,
    tenant_id TEXT REFERENCES tenants(id),
    name TEXT
);
CREATE TABLE settings (
    id TEXT PRIMARY KEY,
    tenant_id TEXT REFERENCES tenants(id),
    key TEXT,
    value TEXT NOT NULL,
    description TEXT,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE file_records (
    id TEXT PRIMARY KEY,
    tenant_id TEXT REFERENCES tenants(id),
    uploaded_by TEXT REFERENCES users(id),
    file_name TEXT
);
CREATE TABLE tenant_members (
    id TEXT PRIMARY KEY,
    tenant_id TEXT REFERENCES tenants(id),
    user_id TEXT REFERENCES users(id),
    role_id TEXT REFERENCES roles(id)
);
CREATE TABLE role_permissions (
    id TEXT PRIMARY KEY,
    role_id TEXT REFERENCES roles(id),
    permission TEXT
);
CREATE TABLE notification_preferences (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id),
    channel TEXT
);
CREATE TABLE support_tickets (
    id TEXT PRIMARY KEY,
    tenant_id TEXT REFERENCES tenants(id),
    subject TEXT,
    created_by TEXT,
    assigned_to TEXT,
    created_at TEXT
);
CREATE TABLE support_ticket_messages (
    id TEXT PRIMARY KEY,
    ticket_id TEXT REFERENCES support_tickets(id),
    author_id TEXT,
    body TEXT
);
CREATE TABLE audit_logs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT REFERENCES tenants(id),
    action TEXT
);
CREATE TABLE sessions (id TEXT PRIMARY KEY, user_id TEXT);
"""


def make_mini_schema() -> BackupSchema:
    """Eleven tables covering every scope strategy."""
    return BackupSchema(
        tables=[
            TableDef(name="tenants", scope=ScopeStrategy.GLOBAL),
            TableDef(name="users", scope=ScopeStrategy.GLOBAL),
            TableDef(name="roles", depends_on=["tenants"]),
            TableDef(
                name="settings",
                depends_on=["tenants"],
                not_null_text=["value"],
                redact_secrets=True,
            ),
            TableDef(name="file_records", depends_on=["tenants", "users"], best_effort=True),
            TableDef(
                name="tenant_members",
                depends_on=["tenants", "users", "roles"],
                role_refs=["role_id"],
            ),
            TableDef(
                name="role_permissions",
                scope=ScopeStrategy.PARENT,
                parent=ForeignKey(table="roles", field="role_id"),
                role_field="role_id",
            ),
            TableDef(
                name="notification_preferences",
                scope=ScopeStrategy.TENANT_MEMBERS,
                depends_on=["users"],
            ),
            TableDef(
                name="support_tickets",
                depends_on=["tenants"],
                user_refs=["created_by", "assigned_to"],
            ),
            TableDef(
                name="support_ticket_messages",
                scope=ScopeStrategy.PARENT,
                parent=ForeignKey(table="support_tickets", field="ticket_id"),
                user_refs=["author_id"],
            ),
            TableDef(name="audit_logs", depends_on=["tenants"], tenant_export=False),
        ],
        session_tables=["sessions"],
    )


STAMP = "2024-01-01T00:00:00+00:00"

# Two tenants: u1 and u2 are members of t1, u3 of t2.
SEED_ROWS: dict[str, list[dict[str, Any]]] = {
    "tenants": [
        {"id": "t1", "name": "Acme", "is_active": 1},
        {"id": "t2", "name": "Globex", "is_active": 1},
    ],
    "users": [
        {"id": "u1", "email": "one@example.com"},
        {"id": "u2", "email": "two@example.com"},
        {"id": "u3", "email": "three@example.com"},
    ],
    "roles": [
        {"id": "r1", "tenant_id": "t1", "name": "Admin"},
        {"id": "r2", "tenant_id": "t2", "name": "Admin"},
    ],
    "settings": [
        {"id": "s1", "tenant_id": "t1", "key": "theme", "value": "dark", "created_at": STAMP, "updated_at": STAMP},
        {"id": "s2", "tenant_id": "t1", "key": "email_smtp_password", "value": "hunter2", "created_at": STAMP, "updated_at": STAMP},
        {"id": "s3", "tenant_id": "t2", "key": "theme", "value": "light", "created_at": STAMP, "updated_at": STAMP},
    ],
    "file_records": [
        {"id": "f1", "tenant_id": "t1", "uploaded_by": "u1", "file_name": "logo.png"},
    ],
    "tenant_members": [
        {"id": "m1", "tenant_id": "t1", "user_id": "u1", "role_id": "r1"},
        {"id": "m2", "tenant_id": "t1", "user_id": "u2", "role_id": "r1"},
        {"id": "m3", "tenant_id": "t2", "user_id": "u3", "role_id": "r2"},
    ],
    "role_permissions": [
        {"id": "rp1", "role_id": "r1", "permission": "billing.read"},
        {"id": "rp2", "role_id": "r2", "permission": "billing.read"},
    ],
    "notification_preferences": [
        {"id": "np1", "user_id": "u2", "channel": "email"},
        {"id": "np3", "user_id": "u3", "channel": "push"},
    ],
    "support_tickets": [
        {"id": "st1", "tenant_id": "t1", "subject": "Login", "created_by": "u2", "assigned_to": None, "created_at": STAMP},
        {"id": "st2", "tenant_id": "t2", "subject": "Invoice", "created_by": "u3", "assigned_to": None, "created_at": STAMP},
    ],
    "support_ticket_messages": [
        {"id": "sm1", "ticket_id": "st1", "author_id": "u2", "body": "Cannot log in"},
        {"id": "sm2", "ticket_id": "st2", "author_id": "u3", "body": "Wrong total"},
    ],
    "audit_logs": [
        {"id": "a1", "tenant_id": "t1", "action": "login"},
    ],
    "sessions": [
        {"id": "sess1", "user_id": "u1"},
    ],
}


# ------------------------------------------------------------------
# SQLite client
# ------------------------------------------------------------------


def _sqlite_value(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class SqliteSavepoint:
    def __init__(self, client: "SqliteClient", name: str) -> None:
        self._client = client
        self._name = name

    async def release(self) -> None:
        self._client.conn.execute(f"RELEASE SAVEPOINT {self._name}")

    async def rollback(self) -> None:
        self._client.conn.execute(f"ROLLBACK TO SAVEPOINT {self._name}")
        self._client.conn.execute(f"RELEASE SAVEPOINT {self._name}")


class SqliteTransaction:
    def __init__(self, client: "SqliteClient") -> None:
        self._client = client
        self._savepoints = 0

    async def execute(self, sql: str, params: dict | None = None) -> None:
        self._client.run(sql, params)

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        return self._client.run(sql, params)

    async def begin_savepoint(self) -> SqliteSavepoint:
        self._savepoints += 1
        name = f"sp_{self._savepoints}"
        self._client.conn.execute(f"SAVEPOINT {name}")
        return SqliteSavepoint(self._client, name)


class SqliteClient:
    """``DatabaseClient`` over an in-memory SQLite database.

    Attributes:
        statements: Every SQL statement run through the client, in order.
        fail_on: Optional hook ``(sql, params) -> exception | None``; a
            returned exception is raised instead of running the statement.
    """

    dialect = "sqlite"

    def __init__(self, ddl: str = MINI_DDL) -> None:
        self.conn = sqlite3.connect(":memory:", isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(ddl)
        self.statements: list[str] = []
        self.fail_on: Callable[[str, dict], BaseException | None] | None = None
        self.closed = False

    def run(self, sql: str, params: dict | None = None) -> list[dict]:
        params = params or {}
        self.statements.append(sql)
        if self.fail_on is not None:
            exc = self.fail_on(sql, params)
            if exc is not None:
                raise exc
        try:
            cursor = self.conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise IntegrityError(sql, params, e) from e
        except sqlite3.Error as e:
            raise OperationalError(sql, params, e) from e
        return [dict(row) for row in cursor.fetchall()]

    def seed(self, rows_by_table: dict[str, list[dict[str, Any]]]) -> None:
        for table, rows in rows_by_table.items():
            for row in rows:
                columns = ", ".join(row)
                placeholders = ", ".join(f":{c}" for c in row)
                self.conn.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    {k: _sqlite_value(v) for k, v in row.items()},
                )

    def rows(self, table: str, order_by: str = "id") -> list[dict]:
        cursor = self.conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}")
        return [dict(row) for row in cursor.fetchall()]

    def ids(self, table: str) -> list[str]:
        return [row["id"] for row in self.rows(table)]

    # -- DatabaseClient ------------------------------------------------

    @staticmethod
    def _where(filters: dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
        conditions: list[str] = []
        params: dict[str, Any] = {}
        for i, (column, value) in enumerate((filters or {}).items()):
            if value is None:
                conditions.append(f"{column} IS NULL")
                continue
            conditions.append(f"{column} = :w{i}")
            params[f"w{i}"] = _sqlite_value(value)
        return " AND ".join(conditions), params

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        sql = f"SELECT {columns} FROM {table}"
        where, params = self._where(filters)
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        return self.run(sql, params)

    async def insert(self, table: str, data: dict) -> dict:
        columns = ", ".join(data)
        placeholders = ", ".join(f":{c}" for c in data)
        params = {k: _sqlite_value(v) for k, v in data.items()}
        self.run(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", params)
        return params

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        assignments = ", ".join(f"{c} = :s_{c}" for c in data)
        params = {f"s_{k}": _sqlite_value(v) for k, v in data.items()}
        where, where_params = self._where(filters)
        self.run(f"UPDATE {table} SET {assignments} WHERE {where}", {**params, **where_params})
        return data

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        return self.run(sql, params)

    async def execute(self, sql: str, params: dict | None = None) -> None:
        self.run(sql, params)

    @asynccontextmanager
    async def transaction(self):
        self.conn.execute("BEGIN")
        try:
            yield SqliteTransaction(self)
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    @asynccontextmanager
    async def advisory_lock(self, name: str):
        yield True

    async def test_connection(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def mini_schema() -> BackupSchema:
    return make_mini_schema()


@pytest.fixture
def client() -> SqliteClient:
    """Empty database with the test schema's tables."""
    db = SqliteClient()
    yield db
    db.conn.close()


@pytest.fixture
def seeded_client(client) -> SqliteClient:
    """Database holding two tenants' worth of rows."""
    client.seed(SEED_ROWS)
    return client
