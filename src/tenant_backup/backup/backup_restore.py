"""Backup and restore driven by a ``BackupSchema``.

Backups are ZIP archives with one ``<table>.json`` document per exported
table.  Which tables exist, how they are scoped to a tenant, and the
order they are restored in all come from the caller-provided schema.

Usage:
    from tenant_backup.backup.backup_restore import (
        backup_database,
        restore_database,
        validate_backup,
    )
    from tenant_backup.backup.catalog import BackupCatalog
    from tenant_backup.backup.platform import PLATFORM_SCHEMA

    catalog = BackupCatalog("/var/lib/app")

    # Backup
    path = await backup_database(adapter, PLATFORM_SCHEMA, catalog, tenant_id="t-1")

    # Restore
    report = await restore_database(adapter, PLATFORM_SCHEMA, path, tenant_id="t-1")

    # Validate (sync -- local file read only)
    result = validate_backup(path, PLATFORM_SCHEMA)
"""

import logging
from pathlib import Path

from tenant_backup.adapters.base import DatabaseClient
from tenant_backup.backup.catalog import BackupCatalog
from tenant_backup.backup.errors import ArchiveReadError
from tenant_backup.backup.executor import RestoreExecutor
from tenant_backup.backup.exporter import TableExporter
from tenant_backup.backup.models import BackupKind, BackupSchema, RestoreReport
from tenant_backup.backup.packager import ArchivePackager
from tenant_backup.backup.planner import RestorePlanner, read_archive

logger = logging.getLogger(__name__)


async def backup_database(
    adapter: DatabaseClient,
    schema: BackupSchema,
    catalog: BackupCatalog,
    tenant_id: str | None = None,
    packager: ArchivePackager | None = None,
) -> str:
    """Export the database (or one tenant) into a new catalog archive.

    Global backups skip tables whose export fails and keep going; tenant
    backups abort on the first failing table.

    Args:
        adapter: Database adapter implementing ``DatabaseClient`` Protocol.
        schema: Declarative backup schema describing tables and FK edges.
        catalog: Catalog deciding where the archive is written.
        tenant_id: Tenant to back up; ``None`` for a global backup.
        packager: Archive packager; defaults to the standard compression
            levels.

    Returns:
        Absolute path to the created archive.

    Raises:
        TableExportError: If a tenant backup cannot export a table.
        ArchiveWriteError: If the archive cannot be written.
    """
    kind = BackupKind.GLOBAL if tenant_id is None else BackupKind.TENANT
    packager = packager or ArchivePackager()

    exporter = TableExporter(adapter, schema)
    rows_by_table, failed = await exporter.export_all(tenant_id)
    if failed:
        logger.warning(f"Backup is missing {len(failed)} table(s): {', '.join(failed)}")

    path = catalog.new_archive_path(kind, tenant_id)
    packager.pack(rows_by_table, path, kind)
    logger.info(f"Created {kind.value} backup {path.name}")
    return str(path.resolve())


async def restore_database(
    adapter: DatabaseClient,
    schema: BackupSchema,
    backup_path: str | Path,
    tenant_id: str | None = None,
) -> RestoreReport:
    """Restore an archive, fully or into one tenant.

    Args:
        adapter: Database adapter implementing ``DatabaseClient`` Protocol.
        schema: Declarative backup schema describing tables and FK edges.
        backup_path: Path to the ``.zip`` archive.
        tenant_id: Target tenant; ``None`` replaces every table.

    Returns:
        ``RestoreReport`` of the committed restore.

    Raises:
        ArchiveReadError: If the archive is unreadable (nothing modified).
        TenantRestoreBlockedError: If membership users are missing.
        RestoreAbortedError: If the restore transaction was rolled back.
    """
    plan = RestorePlanner(schema).plan(backup_path, target_tenant_id=tenant_id)
    return await RestoreExecutor(adapter, schema).execute(plan)


async def restore_local_backup(
    adapter: DatabaseClient,
    schema: BackupSchema,
    catalog: BackupCatalog,
    filename: str,
    tenant_id: str | None = None,
) -> RestoreReport:
    """Restore a catalog archive by filename.

    Raises:
        FilenameValidationError: If the filename is not a valid backup name.
        BackupNotFoundError: If the archive does not exist.
    """
    path = catalog.resolve_path(filename)
    return await restore_database(adapter, schema, path, tenant_id=tenant_id)


def validate_backup(backup_path: str | Path, schema: BackupSchema) -> dict:
    """Validate archive format and row shape without touching a database.

    This function is **sync** -- it only reads a local file.

    Args:
        backup_path: Path to the ``.zip`` archive.
        schema: Declarative backup schema to validate against.

    Returns:
        Dict with ``valid`` (bool), ``errors`` (list[str]),
        and ``warnings`` (list[str]).

    Example:
        result = validate_backup("backups/global/global_backup_20240115_020000.zip", schema)
        if result["errors"]:
            raise ValueError("Backup is invalid")
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not Path(backup_path).is_file():
        errors.append(f"Backup file not found: {backup_path}")
        return {"valid": False, "errors": errors, "warnings": warnings}

    try:
        documents = read_archive(backup_path)
    except ArchiveReadError as e:
        errors.append(str(e))
        return {"valid": False, "errors": errors, "warnings": warnings}

    if not documents:
        warnings.append("Archive contains no table documents")

    for table_name, rows in documents.items():
        table_def = schema.get(table_name)
        if table_def is None:
            warnings.append(f"Unknown table '{table_name}' will be skipped on restore")
            continue

        missing_pk = sum(1 for row in rows if row.get(table_def.pk) in (None, ""))
        if missing_pk:
            warnings.append(
                f"{table_name}: {missing_pk} row(s) without '{table_def.pk}' "
                f"(a new id is generated on restore)"
            )

        if table_def.parent is not None and table_def.parent.table in documents:
            parent_def = schema.get(table_def.parent.table)
            parent_pks = {
                str(r[parent_def.pk]) for r in documents[parent_def.name]
                if r.get(parent_def.pk) is not None
            }
            orphans = sum(
                1 for row in rows
                if row.get(table_def.parent.field) is not None
                and str(row[table_def.parent.field]) not in parent_pks
            )
            if orphans:
                warnings.append(
                    f"{table_name}: {orphans} orphaned row(s), "
                    f"{table_def.parent.field} not in backup"
                )

    valid = len(errors) == 0
    return {"valid": valid, "errors": errors, "warnings": warnings}
