"""Database adapters package.

Provides the ``DatabaseClient``, ``Transaction`` and ``Savepoint``
Protocols and the async PostgreSQL adapter.

Usage:
    from tenant_backup.adapters import DatabaseClient, AsyncPostgresAdapter
"""

from tenant_backup.adapters.base import DatabaseClient, Savepoint, Transaction
from tenant_backup.adapters.postgres import AsyncPostgresAdapter

__all__ = [
    "DatabaseClient",
    "Savepoint",
    "Transaction",
    "AsyncPostgresAdapter",
]
