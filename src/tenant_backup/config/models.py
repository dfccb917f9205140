"""Pydantic models for database and backup configuration."""

from pydantic import BaseModel, Field


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: str = "postgres"  # Defaults to postgres


class BackupSettings(BaseModel):
    """``[backup]`` section of db.toml."""

    data_dir: str = "."  # archives go under <data_dir>/backups/
    global_compresslevel: int = Field(default=1, ge=0, le=9)
    tenant_compresslevel: int = Field(default=9, ge=0, le=9)
    scheduler_interval_seconds: int = Field(default=60, gt=0)
    default_timezone: str = "UTC"  # used when the app_timezone setting is unset


class DatabaseConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    backup: BackupSettings = Field(default_factory=BackupSettings)


# ============================================================================
# Connection Result
# ============================================================================


class ConnectionResult(BaseModel):
    """Result of connect_and_validate()."""

    success: bool
    profile_name: str | None = None
    missing_tables: list[str] = Field(default_factory=list)
    error: str | None = None

    def format_report(self) -> str:
        """Format the result as a human-readable report."""
        if self.success:
            return f"Connected to profile '{self.profile_name}'"
        lines = [f"Connection failed: {self.error}"]
        if self.missing_tables:
            lines.append(f"\n  Missing tables ({len(self.missing_tables)}):")
            for table in self.missing_tables:
                lines.append(f"    - {table}")
        return "\n".join(lines)
