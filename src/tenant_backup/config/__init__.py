"""Configuration management: profiles, backup settings, and TOML loading.

Usage:
    >>> from tenant_backup.config import load_db_config, BackupSettings, DatabaseConfig
"""

from tenant_backup.config.loader import load_db_config
from tenant_backup.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

__all__ = ["load_db_config", "BackupSettings", "DatabaseConfig", "DatabaseProfile"]
