"""Backup catalog: archive files on disk, split by backup kind.

Layout under ``data_dir``::

    backups/global/global_backup_<YYYYMMDD_HHMMSS>.zip
    backups/tenants/<tenant_id>/tenant_<tenant_id>_<YYYYMMDD_HHMMSS>.zip

``resolve_path`` is the only way a user-supplied filename becomes a path,
and it validates the name before touching the filesystem.

Usage:
    from tenant_backup.backup.catalog import BackupCatalog

    catalog = BackupCatalog("/var/lib/app")
    for record in catalog.list_backups():
        print(record.name, record.size)
    path = catalog.resolve_path("global_backup_20240115_020000.zip")
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from tenant_backup.backup.errors import BackupNotFoundError, FilenameValidationError
from tenant_backup.backup.models import BackupKind, BackupRecord

logger = logging.getLogger(__name__)

GLOBAL_PREFIX = "global_backup_"
TENANT_PREFIX = "tenant_"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_NAME_TIMESTAMP = re.compile(r"_(\d{8}_\d{6})\.zip$")
_TENANT_NAME = re.compile(r"^tenant_(?P<tenant>.+)_\d{8}_\d{6}\.zip$")


def validate_filename(filename: str) -> tuple[BackupKind, str | None]:
    """Validate a backup filename without touching the filesystem.

    Returns:
        Tuple of (backup kind, tenant id or ``None``).

    Raises:
        FilenameValidationError: On traversal sequences, unsafe characters,
            or names outside the global/tenant conventions.
    """
    if not filename or ".." in filename or "/" in filename or "\\" in filename:
        raise FilenameValidationError(f"Invalid filename format: {filename!r}")
    if not _SAFE_NAME.match(filename):
        raise FilenameValidationError(f"Invalid characters in filename: {filename!r}")

    if filename.startswith(GLOBAL_PREFIX):
        return BackupKind.GLOBAL, None

    if filename.startswith(TENANT_PREFIX):
        match = _TENANT_NAME.match(filename)
        if match:
            return BackupKind.TENANT, match.group("tenant")
        parts = filename.split("_")
        if len(parts) < 3 or not parts[1]:
            raise FilenameValidationError(f"Invalid tenant backup filename: {filename!r}")
        return BackupKind.TENANT, parts[1]

    raise FilenameValidationError(f"Unknown backup filename: {filename!r}")


def validate_tenant_id(tenant_id: str) -> str:
    """Check a tenant id is safe to use as a directory and filename part."""
    if not tenant_id or ".." in tenant_id or not _SAFE_NAME.match(tenant_id):
        raise FilenameValidationError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


class BackupCatalog:
    """Enumerate, resolve, create and delete archive files under ``data_dir``."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    @property
    def backup_root(self) -> Path:
        return self.data_dir / "backups"

    @property
    def global_dir(self) -> Path:
        return self.backup_root / "global"

    @property
    def tenants_dir(self) -> Path:
        return self.backup_root / "tenants"

    def tenant_dir(self, tenant_id: str) -> Path:
        return self.tenants_dir / tenant_id

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupRecord]:
        """All archives, newest first."""
        records: list[BackupRecord] = []

        if self.global_dir.is_dir():
            for path in self.global_dir.iterdir():
                if path.is_file() and path.name.startswith(GLOBAL_PREFIX):
                    records.append(self._record(path, BackupKind.GLOBAL, None))

        if self.tenants_dir.is_dir():
            for tenant_path in self.tenants_dir.iterdir():
                if not tenant_path.is_dir():
                    continue
                tenant_id = tenant_path.name
                prefix = f"{TENANT_PREFIX}{tenant_id}_"
                for path in tenant_path.iterdir():
                    if path.is_file() and path.name.startswith(prefix):
                        records.append(self._record(path, BackupKind.TENANT, tenant_id))

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    @staticmethod
    def _record(path: Path, kind: BackupKind, tenant_id: str | None) -> BackupRecord:
        stat = path.stat()
        return BackupRecord(
            name=path.name,
            path=str(path),
            size=stat.st_size,
            created_at=_created_at(path.name, stat.st_mtime),
            backup_type=kind,
            tenant_id=tenant_id,
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def resolve_path(self, filename: str) -> Path:
        """Map a validated filename to its archive path.

        Raises:
            FilenameValidationError: If the name fails validation (no
                filesystem access happens in that case).
            BackupNotFoundError: If the archive does not exist.
        """
        kind, tenant_id = validate_filename(filename)
        if kind is BackupKind.GLOBAL:
            path = self.global_dir / filename
        else:
            path = self.tenant_dir(tenant_id) / filename

        if not path.is_file():
            raise BackupNotFoundError(f"Backup file {filename} not found")
        return path

    def new_archive_path(
        self,
        kind: BackupKind,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> Path:
        """Path for a new archive, creating its directory."""
        stamp = (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)
        if kind is BackupKind.GLOBAL:
            directory = self.global_dir
            name = f"{GLOBAL_PREFIX}{stamp}.zip"
        else:
            if tenant_id is None:
                raise ValueError("tenant_id is required for tenant backups")
            validate_tenant_id(tenant_id)
            directory = self.tenant_dir(tenant_id)
            name = f"{TENANT_PREFIX}{tenant_id}_{stamp}.zip"

        directory.mkdir(parents=True, exist_ok=True)
        return directory / name

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, filename: str) -> None:
        """Delete one archive by filename."""
        path = self.resolve_path(filename)
        path.unlink()
        logger.info(f"Deleted backup {filename}")

    def prune(
        self,
        retention_days: int,
        kind: BackupKind,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Delete archives of one kind (and tenant) older than the retention window.

        Returns:
            Names of the deleted archives.
        """
        if retention_days <= 0:
            return []
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)

        deleted: list[str] = []
        for record in self.list_backups():
            if record.backup_type is not kind:
                continue
            if kind is BackupKind.TENANT and record.tenant_id != tenant_id:
                continue
            if record.created_at < cutoff:
                Path(record.path).unlink(missing_ok=True)
                deleted.append(record.name)

        if deleted:
            logger.info(f"Pruned {len(deleted)} {kind.value} backup(s) older than {retention_days} day(s)")
        return deleted

    def list(self) -> "list[BackupRecord]":
        """Alias of :meth:`list_backups`."""
        return self.list_backups()


def _created_at(name: str, mtime: float) -> datetime:
    """Creation time from the ``YYYYMMDD_HHMMSS`` in the name, else mtime."""
    match = _NAME_TIMESTAMP.search(name)
    if match:
        try:
            return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.fromtimestamp(mtime, tz=timezone.utc)
