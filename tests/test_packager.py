"""Tests for archive packaging."""

import json
import zipfile

import pytest

from tenant_backup.backup.errors import ArchiveWriteError
from tenant_backup.backup.models import BackupKind
from tenant_backup.backup.packager import ArchivePackager


class TestArchivePackager:
    """One JSON document per non-empty table."""

    def test_writes_one_entry_per_table(self, tmp_path):
        path = tmp_path / "out" / "global_backup_20240101_020000.zip"
        rows = {
            "tenants": [{"id": "t1", "name": "Acme"}],
            "roles": [{"id": "r1", "tenant_id": "t1", "name": "Ops"}],
            "audit_logs": [],
        }

        result = ArchivePackager().pack(rows, path)

        assert result == path
        with zipfile.ZipFile(path) as archive:
            assert sorted(archive.namelist()) == ["roles.json", "tenants.json"]
            assert json.loads(archive.read("roles.json")) == rows["roles"]

    def test_documents_are_indented_utf8(self, tmp_path):
        path = tmp_path / "a.zip"
        ArchivePackager().pack({"tenants": [{"id": "t1", "name": "Café"}]}, path)
        with zipfile.ZipFile(path) as archive:
            text = archive.read("tenants.json").decode("utf-8")
        assert "Café" in text
        assert text.startswith("[\n  {")

    def test_compression_level_by_kind(self):
        packager = ArchivePackager(global_compresslevel=2, tenant_compresslevel=8)
        assert packager.compresslevel_for(BackupKind.GLOBAL) == 2
        assert packager.compresslevel_for(BackupKind.TENANT) == 8

    def test_default_levels(self):
        packager = ArchivePackager()
        assert packager.compresslevel_for(BackupKind.GLOBAL) == 1
        assert packager.compresslevel_for(BackupKind.TENANT) == 9

    def test_unserializable_value_falls_back_to_str(self, tmp_path):
        path = tmp_path / "a.zip"
        ArchivePackager().pack({"t": [{"o": object}]}, path)
        with zipfile.ZipFile(path) as archive:
            [row] = json.loads(archive.read("t.json"))
        assert row["o"] == str(object)

    def test_write_failure_removes_partial_file(self, tmp_path):
        path = tmp_path / "a.zip"
        # circular reference makes json.dumps raise ValueError mid-archive
        loop: dict = {}
        loop["self"] = loop
        rows = {"first": [{"id": 1}], "second": [loop]}

        with pytest.raises(ArchiveWriteError, match="a.zip"):
            ArchivePackager().pack(rows, path)
        assert not path.exists()

    def test_unwritable_destination(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        with pytest.raises(ArchiveWriteError):
            ArchivePackager().pack({"t": [{"id": 1}]}, blocker / "a.zip")
