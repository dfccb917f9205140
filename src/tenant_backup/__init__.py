"""tenant-backup: Multi-tenant backup and restore over an async dict-based adapter.

Provides ZIP-archive backups of a whole database or a single tenant,
tenant-isolated restore driven by a declarative table graph, a local
backup catalog with retention, and a settings-driven backup scheduler.

Usage:
    from tenant_backup import AsyncPostgresAdapter, DatabaseClient, get_adapter
    from tenant_backup import BackupSchema, TableDef, ForeignKey, PLATFORM_SCHEMA
    from tenant_backup import backup_database, restore_database, validate_backup
    from tenant_backup import DatabaseProfile, DatabaseConfig, load_db_config
"""

__version__ = "0.1.0"

# Adapters
from tenant_backup.adapters.base import DatabaseClient
from tenant_backup.adapters.postgres import AsyncPostgresAdapter

# Config
from tenant_backup.config.loader import load_db_config
from tenant_backup.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

# Factory
from tenant_backup.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_adapter,
    resolve_url,
)

# Backup
from tenant_backup.backup import (
    PLATFORM_SCHEMA,
    BackupCatalog,
    BackupSchema,
    ForeignKey,
    RestoreReport,
    ScopeStrategy,
    TableDef,
    backup_database,
    restore_database,
    restore_local_backup,
    validate_backup,
)
from tenant_backup.backup.scheduler import BackupScheduler

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    # Config
    "load_db_config",
    "BackupSettings",
    "DatabaseProfile",
    "DatabaseConfig",
    # Factory
    "get_adapter",
    "connect_and_validate",
    "ProfileNotFoundError",
    "resolve_url",
    # Backup
    "PLATFORM_SCHEMA",
    "BackupCatalog",
    "BackupSchema",
    "BackupScheduler",
    "ForeignKey",
    "RestoreReport",
    "ScopeStrategy",
    "TableDef",
    "backup_database",
    "restore_database",
    "restore_local_backup",
    "validate_backup",
]
