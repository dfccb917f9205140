"""Tests for the on-disk backup catalog and filename validation."""

import os
from datetime import datetime, timezone

import pytest

from tenant_backup.backup.catalog import BackupCatalog, validate_filename
from tenant_backup.backup.errors import BackupNotFoundError, FilenameValidationError
from tenant_backup.backup.models import BackupKind


def _touch(path, content=b"PK"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


# ------------------------------------------------------------------
# Filename validation
# ------------------------------------------------------------------


class TestValidateFilename:
    """Names are checked before any filesystem access."""

    def test_global(self):
        assert validate_filename("global_backup_20240115_020000.zip") == (BackupKind.GLOBAL, None)

    def test_tenant(self):
        assert validate_filename("tenant_abc-123_20240115_023000.zip") == (
            BackupKind.TENANT,
            "abc-123",
        )

    def test_tenant_id_with_underscores(self):
        kind, tenant = validate_filename("tenant_acme_eu_20240115_023000.zip")
        assert kind is BackupKind.TENANT
        assert tenant == "acme_eu"

    @pytest.mark.parametrize(
        "name",
        [
            "../etc/passwd",
            "..global_backup_20240115_020000.zip",
            "global_backup/../../x.zip",
            "tenants\\t1\\x.zip",
            "",
        ],
    )
    def test_traversal_rejected(self, name):
        with pytest.raises(FilenameValidationError, match="Invalid filename format"):
            validate_filename(name)

    def test_unsafe_characters_rejected(self):
        with pytest.raises(FilenameValidationError, match="Invalid characters"):
            validate_filename("global_backup_2024 01.zip")

    def test_unknown_prefix_rejected(self):
        with pytest.raises(FilenameValidationError, match="Unknown backup filename"):
            validate_filename("snapshot_20240115.zip")

    def test_tenant_without_id_rejected(self):
        with pytest.raises(FilenameValidationError):
            validate_filename("tenant_.zip")


# ------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------


class TestBackupCatalog:
    """Listing, resolving, creating and deleting archives."""

    def test_layout(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        assert catalog.global_dir == tmp_path / "backups" / "global"
        assert catalog.tenant_dir("t1") == tmp_path / "backups" / "tenants" / "t1"

    def test_empty_catalog(self, tmp_path):
        assert BackupCatalog(tmp_path).list_backups() == []

    def test_list_newest_first(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        _touch(catalog.global_dir / "global_backup_20240101_020000.zip")
        _touch(catalog.global_dir / "global_backup_20240103_020000.zip")
        _touch(catalog.tenant_dir("t1") / "tenant_t1_20240102_023000.zip")
        _touch(catalog.global_dir / "notes.txt")
        _touch(catalog.tenant_dir("t1") / "tenant_t2_20240105_023000.zip")

        records = catalog.list_backups()
        assert [r.name for r in records] == [
            "global_backup_20240103_020000.zip",
            "tenant_t1_20240102_023000.zip",
            "global_backup_20240101_020000.zip",
        ]
        assert records[1].backup_type is BackupKind.TENANT
        assert records[1].tenant_id == "t1"
        assert records[0].size == 2
        assert records[0].created_at == datetime(2024, 1, 3, 2, 0, tzinfo=timezone.utc)

    def test_list_alias(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        _touch(catalog.global_dir / "global_backup_20240101_020000.zip")
        assert catalog.list() == catalog.list_backups()

    def test_list_delegates_to_list_backups(self, tmp_path, monkeypatch):
        catalog = BackupCatalog(tmp_path)
        monkeypatch.setattr(catalog, "list_backups", lambda: ["sentinel"])
        assert catalog.list() == ["sentinel"]
        assert BackupCatalog.list is not BackupCatalog.list_backups

    def test_created_at_falls_back_to_mtime(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        path = _touch(catalog.global_dir / "global_backup_manual.zip")
        os.utime(path, (1_700_000_000, 1_700_000_000))
        [record] = catalog.list_backups()
        assert record.created_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_resolve_path(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        path = _touch(catalog.tenant_dir("t1") / "tenant_t1_20240102_023000.zip")
        assert catalog.resolve_path("tenant_t1_20240102_023000.zip") == path

    def test_resolve_missing(self, tmp_path):
        with pytest.raises(BackupNotFoundError, match="not found"):
            BackupCatalog(tmp_path).resolve_path("global_backup_20240101_020000.zip")

    def test_resolve_traversal_rejected(self, tmp_path):
        with pytest.raises(FilenameValidationError):
            BackupCatalog(tmp_path).resolve_path("../../secrets.zip")

    def test_new_archive_path(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        now = datetime(2024, 1, 15, 2, 30, 5, tzinfo=timezone.utc)

        global_path = catalog.new_archive_path(BackupKind.GLOBAL, now=now)
        tenant_path = catalog.new_archive_path(BackupKind.TENANT, "t1", now=now)

        assert global_path == catalog.global_dir / "global_backup_20240115_023005.zip"
        assert tenant_path == catalog.tenant_dir("t1") / "tenant_t1_20240115_023005.zip"
        assert global_path.parent.is_dir()
        assert tenant_path.parent.is_dir()
        assert validate_filename(tenant_path.name) == (BackupKind.TENANT, "t1")

    def test_new_archive_path_rejects_unsafe_tenant(self, tmp_path):
        with pytest.raises(FilenameValidationError):
            BackupCatalog(tmp_path).new_archive_path(BackupKind.TENANT, "../t1")

    def test_delete(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        path = _touch(catalog.global_dir / "global_backup_20240101_020000.zip")
        catalog.delete("global_backup_20240101_020000.zip")
        assert not path.exists()


class TestPrune:
    """Retention applies per kind and per tenant."""

    def test_prune_global(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        old = _touch(catalog.global_dir / "global_backup_20240101_020000.zip")
        recent = _touch(catalog.global_dir / "global_backup_20240125_020000.zip")
        tenant_old = _touch(catalog.tenant_dir("t1") / "tenant_t1_20240101_023000.zip")

        now = datetime(2024, 2, 1, tzinfo=timezone.utc)
        deleted = catalog.prune(30, BackupKind.GLOBAL, now=now)

        assert deleted == ["global_backup_20240101_020000.zip"]
        assert not old.exists()
        assert recent.exists()
        assert tenant_old.exists()

    def test_prune_tenant_scoped(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        t1 = _touch(catalog.tenant_dir("t1") / "tenant_t1_20240101_023000.zip")
        t2 = _touch(catalog.tenant_dir("t2") / "tenant_t2_20240101_023000.zip")

        now = datetime(2024, 2, 1, tzinfo=timezone.utc)
        deleted = catalog.prune(14, BackupKind.TENANT, tenant_id="t1", now=now)

        assert deleted == ["tenant_t1_20240101_023000.zip"]
        assert not t1.exists()
        assert t2.exists()

    def test_zero_retention_keeps_everything(self, tmp_path):
        catalog = BackupCatalog(tmp_path)
        _touch(catalog.global_dir / "global_backup_20000101_020000.zip")
        assert catalog.prune(0, BackupKind.GLOBAL) == []
