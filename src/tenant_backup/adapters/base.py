"""Database client protocol definitions.

Defines the ``DatabaseClient`` Protocol that all adapters must implement,
plus the ``Transaction`` and ``Savepoint`` protocols used by restores.
All methods are ``async def`` -- the library is async-first.

Usage:
    from tenant_backup.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        rows = await client.fetch("SELECT id FROM tenants WHERE is_active = true")
        async with client.transaction() as tx:
            savepoint = await tx.begin_savepoint()
            await tx.execute("DELETE FROM sessions")
            await savepoint.release()
        await client.close()
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class Savepoint(Protocol):
    """A nested transaction inside a ``Transaction``.

    Exactly one of ``release`` or ``rollback`` must be awaited.
    """

    async def release(self) -> None:
        """Keep the work done since the savepoint was opened."""
        ...

    async def rollback(self) -> None:
        """Discard the work done since the savepoint was opened.

        The enclosing transaction stays usable.
        """
        ...


class Transaction(Protocol):
    """An open database transaction.

    Committed when the ``DatabaseClient.transaction()`` block exits cleanly,
    rolled back when it exits with an exception.
    """

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a statement inside the transaction."""
        ...

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a query inside the transaction and return rows as dicts."""
        ...

    async def begin_savepoint(self) -> Savepoint:
        """Open a savepoint (``SAVEPOINT`` / ``begin_nested``)."""
        ...


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    All methods are async -- callers must ``await`` every operation.
    """

    @property
    def dialect(self) -> str:
        """SQL dialect name (e.g. ``"postgresql"``)."""
        ...

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table.

        Args:
            table: Table name.
            columns: Comma-separated column names (e.g., ``"id, key, value"``).
            filters: Optional dict of field=value filters (all must match via
                AND).  A ``None`` value matches ``IS NULL``.
            order_by: Optional column name to sort by.

        Returns:
            List of dicts, one per row.  Empty list if no matches.

        Example:
            rows = await client.select(
                "settings",
                "id, value",
                filters={"tenant_id": None, "key": "app_timezone"},
            )
        """
        ...

    async def insert(self, table: str, data: dict) -> dict:
        """Insert row into table and return the created row."""
        ...

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        """Update rows in table and return the first updated row.

        Raises:
            ValueError: If no rows match filters.
        """
        ...

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a raw SQL query and return rows as dicts.

        Example:
            rows = await client.fetch(
                "SELECT * FROM roles WHERE tenant_id = :tenant_id",
                {"tenant_id": "t-1"},
            )
        """
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a raw SQL statement in its own transaction."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        """Open a transaction for a multi-statement unit of work.

        Example:
            async with client.transaction() as tx:
                await tx.execute('DELETE FROM "roles"')
        """
        ...

    def advisory_lock(self, name: str) -> AbstractAsyncContextManager[bool]:
        """Try to take a cross-process lock; yields whether it was acquired."""
        ...

    async def test_connection(self) -> bool:
        """Check that the database answers ``SELECT 1``."""
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...
