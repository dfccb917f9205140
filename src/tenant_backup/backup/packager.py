"""Archive packager: writes row collections into a ZIP of JSON documents.

Each non-empty table becomes one ``<table>.json`` entry holding a JSON
array of row objects.  The entry name is the only record of the
destination table, so there is no manifest.
"""

import json
import logging
import zipfile
from pathlib import Path
from typing import Any

from tenant_backup.backup.errors import ArchiveWriteError
from tenant_backup.backup.models import BackupKind

logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_COMPRESSLEVEL = 1
DEFAULT_TENANT_COMPRESSLEVEL = 9


class ArchivePackager:
    """Serialize ``{table: rows}`` mappings into compressed archives."""

    def __init__(
        self,
        global_compresslevel: int = DEFAULT_GLOBAL_COMPRESSLEVEL,
        tenant_compresslevel: int = DEFAULT_TENANT_COMPRESSLEVEL,
    ) -> None:
        self.global_compresslevel = global_compresslevel
        self.tenant_compresslevel = tenant_compresslevel

    def compresslevel_for(self, kind: BackupKind) -> int:
        if kind is BackupKind.TENANT:
            return self.tenant_compresslevel
        return self.global_compresslevel

    def pack(
        self,
        rows_by_table: dict[str, list[dict[str, Any]]],
        path: Path,
        kind: BackupKind = BackupKind.GLOBAL,
    ) -> Path:
        """Write the archive to ``path``.

        Args:
            rows_by_table: Rows keyed by table name.  Empty tables are skipped.
            path: Destination ``.zip`` path; parent directories are created.
            kind: Backup kind, selects the compression level.

        Returns:
            The written archive path.

        Raises:
            ArchiveWriteError: On any serialization or I/O error.  The partial
                archive is removed first.
        """
        path = Path(path)
        written = 0
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compresslevel_for(kind),
            ) as archive:
                for table_name, rows in rows_by_table.items():
                    if not rows:
                        continue
                    document = json.dumps(rows, indent=2, ensure_ascii=False, default=str)
                    archive.writestr(f"{table_name}.json", document.encode("utf-8"))
                    written += 1
        except (OSError, TypeError, ValueError) as e:
            if path.is_file():
                path.unlink()
            raise ArchiveWriteError(f"Failed to write archive {path.name}: {e}") from e

        logger.info(f"Packed {written} table(s) into {path.name}")
        return path
