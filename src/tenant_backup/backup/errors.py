"""Exception taxonomy for backup and restore operations.

Every error raised by the backup package derives from ``BackupError`` so
callers can catch the whole family at once.  Database driver errors are
never raised directly from a restore -- they are chained onto a
``RestoreAbortedError``.

Usage:
    from tenant_backup.backup.errors import ArchiveReadError, BackupError

    try:
        report = await restore_database(adapter, schema, path)
    except ArchiveReadError:
        ...  # nothing was touched
    except BackupError as e:
        ...
"""


class BackupError(Exception):
    """Base class for all backup/restore errors."""


class SchemaDefinitionError(BackupError):
    """Raised when a ``BackupSchema`` has unknown edges or an FK cycle."""


class ArchiveReadError(BackupError):
    """Raised when an archive cannot be read or holds an invalid document.

    Always raised before any database mutation.
    """


class ArchiveWriteError(BackupError):
    """Raised when packaging fails.  The partial archive is removed."""


class FilenameValidationError(BackupError):
    """Raised when a backup filename fails validation.

    Raised before any filesystem access.
    """


class BackupNotFoundError(BackupError):
    """Raised when a validated backup filename does not exist on disk."""


class TableExportError(BackupError):
    """Raised when exporting a single table fails."""

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"Failed to export {table}: {message}")
        self.table = table


class TenantRestoreBlockedError(BackupError):
    """Raised when a tenant restore references users missing from the database."""

    def __init__(self, missing_user_ids: list[str], total_missing: int) -> None:
        example = ", ".join(missing_user_ids)
        super().__init__(
            f"Tenant restore blocked: {total_missing} user(s) referenced by "
            f"tenant membership are missing in this database (example: {example}). "
            f"Create/import users first, then restore again."
        )
        self.missing_user_ids = missing_user_ids


class RestoreAbortedError(BackupError):
    """Raised when a restore transaction is rolled back.

    The database is left in its pre-restore state.
    """

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table
