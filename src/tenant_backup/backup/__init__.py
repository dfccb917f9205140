"""Backup and restore with a declarative table graph.

Provides ``BackupSchema``-driven export, archive packaging, the backup
catalog, tenant-isolated restore and the backup scheduler.

Usage:
    from tenant_backup.backup import BackupSchema, TableDef, ForeignKey, ScopeStrategy
    from tenant_backup.backup import backup_database, restore_database, validate_backup
"""

from tenant_backup.backup.backup_restore import (
    backup_database,
    restore_database,
    restore_local_backup,
    validate_backup,
)
from tenant_backup.backup.catalog import BackupCatalog
from tenant_backup.backup.errors import (
    ArchiveReadError,
    ArchiveWriteError,
    BackupError,
    BackupNotFoundError,
    FilenameValidationError,
    RestoreAbortedError,
    SchemaDefinitionError,
    TableExportError,
    TenantRestoreBlockedError,
)
from tenant_backup.backup.models import (
    BackupKind,
    BackupRecord,
    BackupSchema,
    ForeignKey,
    RestoreReport,
    RowOutcome,
    ScopeStrategy,
    SkipReason,
    TableDef,
    TableRestoreSummary,
)
from tenant_backup.backup.platform import PLATFORM_SCHEMA

__all__ = [
    "BackupSchema",
    "TableDef",
    "ForeignKey",
    "ScopeStrategy",
    "BackupKind",
    "BackupRecord",
    "RestoreReport",
    "RowOutcome",
    "SkipReason",
    "TableRestoreSummary",
    "PLATFORM_SCHEMA",
    "BackupCatalog",
    "backup_database",
    "restore_database",
    "restore_local_backup",
    "validate_backup",
    # Errors
    "BackupError",
    "ArchiveReadError",
    "ArchiveWriteError",
    "BackupNotFoundError",
    "FilenameValidationError",
    "RestoreAbortedError",
    "SchemaDefinitionError",
    "TableExportError",
    "TenantRestoreBlockedError",
]
