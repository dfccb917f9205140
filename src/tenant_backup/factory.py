"""Database adapter factory.

Supports two configuration modes:
1. Profile mode (db.toml + .db-profile): Multi-database profiles validated
   against the backup schema's tables
2. Direct mode ({prefix}DATABASE_URL env var or ``database_url=``): Single
   database connection without profile validation
"""

import os
from pathlib import Path
from urllib.parse import quote

from sqlalchemy.exc import SQLAlchemyError

from tenant_backup.adapters import AsyncPostgresAdapter
from tenant_backup.backup.models import BackupSchema
from tenant_backup.backup.platform import PLATFORM_SCHEMA
from tenant_backup.config.loader import load_db_config
from tenant_backup.config.models import BackupSettings, ConnectionResult, DatabaseProfile

# Profile lock file path
_PROFILE_LOCK_FILE = Path.cwd() / ".db-profile"


# ============================================================================
# Profile Lock File Operations
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured."""

    pass


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    if _PROFILE_LOCK_FILE.exists():
        return _PROFILE_LOCK_FILE.read_text().strip()
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file.

    Only call this after successful validation.

    Args:
        profile_name: Name of validated profile
    """
    _PROFILE_LOCK_FILE.write_text(profile_name)


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. {env_prefix}DB_PROFILE env var (for initial connect or CI/CD)
    2. .db-profile file (validated profile from previous connect)
    3. Raise ProfileNotFoundError

    Args:
        env_prefix: Prefix for the environment variable lookup
            (e.g. ``"APP_"`` reads ``APP_DB_PROFILE``).

    Returns:
        Profile name

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Run: {env_prefix}DB_PROFILE=<name> tenant-backup connect"
    )


def get_active_profile(
    env_prefix: str = "",
    config_path: Path | None = None,
) -> tuple[str, DatabaseProfile]:
    """Get active profile name and configuration.

    Returns:
        Tuple of (profile_name, DatabaseProfile)

    Raises:
        ProfileNotFoundError: If no profile configured
        KeyError: If profile not found in db.toml
    """
    profile_name = get_active_profile_name(env_prefix)
    config = load_db_config(config_path)

    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    return profile_name, config.profiles[profile_name]


def get_backup_settings(config_path: Path | None = None) -> BackupSettings:
    """Return the ``[backup]`` section, or defaults when db.toml is absent."""
    try:
        return load_db_config(config_path).backup
    except FileNotFoundError:
        return BackupSettings()


# ============================================================================
# Connection and Validation
# ============================================================================


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with password substituted
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


async def _missing_tables(adapter: AsyncPostgresAdapter, schema: BackupSchema) -> list[str]:
    rows = await adapter.fetch(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = current_schema()"
    )
    present = {row["table_name"] for row in rows}
    expected = [t.name for t in schema.tables] + list(schema.session_tables)
    return sorted(name for name in expected if name not in present)


async def connect_and_validate(
    profile_name: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
    schema: BackupSchema = PLATFORM_SCHEMA,
    validate_only: bool = False,
) -> ConnectionResult:
    """Connect to a profile and check every schema table exists.

    This is the primary setup API. Call it once to validate and persist
    the profile selection; later ``get_adapter()`` calls reuse it.

    Args:
        profile_name: Profile name from db.toml. If None, uses
            {env_prefix}DB_PROFILE or the existing .db-profile lock file.
        env_prefix: Prefix for the environment variable lookup.
        config_path: Path to db.toml (default: ``./db.toml``).
        schema: Backup schema whose tables must exist.
        validate_only: If True, do not write the lock file.

    Returns:
        ConnectionResult with success status and any missing tables

    Example:
        >>> result = await connect_and_validate("local")
        >>> if not result.success:
        ...     print(result.format_report())
    """
    if profile_name is None:
        try:
            profile_name = get_active_profile_name(env_prefix)
        except ProfileNotFoundError as e:
            return ConnectionResult(success=False, error=str(e))

    try:
        config = load_db_config(config_path)
    except FileNotFoundError as e:
        return ConnectionResult(success=False, error=str(e))

    if profile_name not in config.profiles:
        available = ", ".join(config.profiles.keys())
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Profile '{profile_name}' not found. Available: {available}",
        )

    adapter = AsyncPostgresAdapter(database_url=resolve_url(config.profiles[profile_name]))
    try:
        await adapter.test_connection()
        missing = await _missing_tables(adapter, schema)
    except (SQLAlchemyError, OSError) as e:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Failed to connect to database: {e}",
        )
    finally:
        await adapter.close()

    if missing:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            missing_tables=missing,
            error=f"Schema validation failed: {len(missing)} missing table(s)",
        )

    if not validate_only:
        write_profile_lock(profile_name)
    return ConnectionResult(success=True, profile_name=profile_name)


# ============================================================================
# Database Adapter Factory
# ============================================================================


async def get_adapter(
    profile_name: str | None = None,
    env_prefix: str = "",
    database_url: str | None = None,
    config_path: Path | None = None,
) -> AsyncPostgresAdapter:
    """Create an adapter for an explicit URL, a profile, or the environment.

    Priority:
    1. ``database_url`` argument
    2. ``profile_name`` argument, else the active profile (env var or lock file)
    3. {env_prefix}DATABASE_URL env var

    Raises:
        ProfileNotFoundError: If no database configuration found
        KeyError: If an explicit profile is not in db.toml

    Example:
        >>> adapter = await get_adapter(env_prefix="APP_")
        >>> rows = await adapter.select("tenants", "id")
    """
    if database_url:
        return AsyncPostgresAdapter(database_url=database_url)

    if profile_name is not None:
        config = load_db_config(config_path)
        if profile_name not in config.profiles:
            raise KeyError(
                f"Profile '{profile_name}' not found in db.toml.\n"
                f"Available profiles: {', '.join(config.profiles.keys())}"
            )
        return AsyncPostgresAdapter(
            database_url=resolve_url(config.profiles[profile_name]),
        )

    try:
        _, profile = get_active_profile(env_prefix, config_path)
        return AsyncPostgresAdapter(database_url=resolve_url(profile))
    except (ProfileNotFoundError, FileNotFoundError):
        # Fall through to direct mode
        pass

    env_url = os.environ.get(f"{env_prefix}DATABASE_URL")
    if env_url:
        return AsyncPostgresAdapter(database_url=env_url)

    raise ProfileNotFoundError(
        "No database configuration found.\n"
        "Either:\n"
        f"  1. Create db.toml and run: {env_prefix}DB_PROFILE=<name> tenant-backup connect\n"
        f"  2. Set {env_prefix}DATABASE_URL"
    )
