"""CLI for database profiles, tenant backups, restores and the scheduler.

Usage:
    DB_PROFILE=local tenant-backup connect
    tenant-backup status
    tenant-backup profiles
    tenant-backup backup
    tenant-backup backup --tenant 7f1c...
    tenant-backup list
    tenant-backup restore global_backup_20250101_020000.zip --yes
    tenant-backup restore tenant_7f1c_20250101_023000.zip --tenant 7f1c --yes
    tenant-backup delete global_backup_20250101_020000.zip --yes
    tenant-backup prune --days 30
    tenant-backup validate backups/global/global_backup_20250101_020000.zip
    tenant-backup schedule --once

Commands:
    connect   - Connect to database and check the backup tables exist
    status    - Show current connection status
    profiles  - List available profiles
    backup    - Create a global or tenant backup
    list      - List local backups, newest first
    restore   - Restore a local backup (global or into one tenant)
    delete    - Delete a local backup
    prune     - Delete backups older than a retention window
    validate  - Check an archive without touching the database
    schedule  - Run the backup scheduler
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import DBAPIError

from tenant_backup.backup import (
    PLATFORM_SCHEMA,
    BackupCatalog,
    BackupError,
    BackupKind,
    TenantRestoreBlockedError,
    backup_database,
    restore_local_backup,
    validate_backup,
)
from tenant_backup.backup.packager import ArchivePackager
from tenant_backup.backup.scheduler import BackupScheduler
from tenant_backup.config.loader import load_db_config
from tenant_backup.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_adapter,
    get_backup_settings,
    read_profile_lock,
)

console = Console()


# ============================================================================
# Helpers
# ============================================================================


def _config_path(args: argparse.Namespace) -> Path | None:
    raw = getattr(args, "config", None)
    return Path(raw) if raw else None


def _catalog(args: argparse.Namespace) -> BackupCatalog:
    settings = get_backup_settings(_config_path(args))
    return BackupCatalog(settings.data_dir)


def _packager(args: argparse.Namespace) -> ArchivePackager:
    settings = get_backup_settings(_config_path(args))
    return ArchivePackager(
        global_compresslevel=settings.global_compresslevel,
        tenant_compresslevel=settings.tenant_compresslevel,
    )


def _confirm(message: str) -> bool:
    response = console.input(f"{message} [y/N] ")
    return response.strip().lower() in ("y", "yes")


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_connect(args: argparse.Namespace) -> int:
    """Async implementation for connect command.

    Returns:
        0 on success, 1 on failure.
    """
    env_prefix = getattr(args, "env_prefix", "")

    previous_profile = read_profile_lock()

    console.print("Connecting to database...", style="dim")

    result = await connect_and_validate(
        env_prefix=env_prefix, config_path=_config_path(args)
    )

    if result.success:
        console.print()
        console.print(
            f"[bold green]v[/bold green] Connected to profile: "
            f"[bold cyan]{result.profile_name}[/bold cyan]"
        )
        console.print("  Backup tables: [green]PRESENT[/green]")

        if previous_profile and previous_profile != result.profile_name:
            console.print(
                f"\n[dim]Switched from[/dim] [bold]{previous_profile}[/bold] "
                f"[dim]to[/dim] [bold cyan]{result.profile_name}[/bold cyan]"
            )
        return 0

    console.print()
    console.print(f"[bold red]x[/bold red] {result.error}")
    if result.missing_tables:
        console.print(result.format_report())
    return 1


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command.

    Returns:
        0 on success, 1 on failure.
    """
    adapter = await get_adapter(
        env_prefix=args.env_prefix, config_path=_config_path(args)
    )
    try:
        label = f"tenant {args.tenant}" if args.tenant else "global"
        console.print(f"Creating {label} backup...", style="dim")
        path = await backup_database(
            adapter,
            PLATFORM_SCHEMA,
            _catalog(args),
            tenant_id=args.tenant,
            packager=_packager(args),
        )
    except BackupError as e:
        console.print(f"[bold red]x[/bold red] Backup failed: {e}")
        return 1
    finally:
        await adapter.close()

    console.print(f"[bold green]v[/bold green] Backup created: [cyan]{path}[/cyan]")
    return 0


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Returns:
        0 on success, 1 on failure or cancellation.
    """
    catalog = _catalog(args)
    try:
        catalog.resolve_path(args.filename)
    except BackupError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    if not args.yes:
        target = f"tenant {args.tenant}" if args.tenant else "the whole database"
        console.print(f"[yellow]This will replace data in {target} from {args.filename}[/yellow]")
        if not _confirm("Continue?"):
            console.print("Cancelled.")
            return 1

    adapter = await get_adapter(
        env_prefix=args.env_prefix, config_path=_config_path(args)
    )
    try:
        report = await restore_local_backup(
            adapter, PLATFORM_SCHEMA, catalog, args.filename, tenant_id=args.tenant
        )
    except TenantRestoreBlockedError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1
    except BackupError as e:
        console.print(f"[bold red]x[/bold red] Restore failed, no changes applied: {e}")
        return 1
    finally:
        await adapter.close()

    console.print("[bold green]v[/bold green] Restore complete")
    console.print(report.format_report())
    return 0


async def _async_schedule(args: argparse.Namespace) -> int:
    """Async implementation for schedule command.

    Returns:
        0 on success, 1 if a single tick failed.
    """
    settings = get_backup_settings(_config_path(args))
    adapter = await get_adapter(
        env_prefix=args.env_prefix, config_path=_config_path(args)
    )
    scheduler = BackupScheduler(
        adapter,
        PLATFORM_SCHEMA,
        BackupCatalog(settings.data_dir),
        packager=_packager(args),
        interval_seconds=settings.scheduler_interval_seconds,
        default_timezone=settings.default_timezone,
    )
    try:
        if not args.once:
            await scheduler.run_forever()
            return 0
        try:
            created = await scheduler.run_once()
        except (BackupError, DBAPIError) as e:
            console.print(f"[bold red]x[/bold red] Scheduler tick failed: {e}")
            return 1
    finally:
        await adapter.close()

    if created:
        for path in created:
            console.print(f"[bold green]v[/bold green] Backup created: [cyan]{path}[/cyan]")
    else:
        console.print("No backups due.", style="dim")
    return 0


def _run_with_adapter(coro_fn, args: argparse.Namespace) -> int:
    try:
        return asyncio.run(coro_fn(args))
    except (ProfileNotFoundError, KeyError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1


# ============================================================================
# Command entry points
# ============================================================================


def cmd_connect(args: argparse.Namespace) -> int:
    """Connect to database and check the backup tables exist.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_connect(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show current connection status.

    Reads only local files (lock file and TOML config) -- no database calls.

    Returns:
        0 always (informational command).
    """
    profile = read_profile_lock()

    if profile:
        table = Table(title="Connection Status", show_header=False)
        table.add_column("Key", style="dim")
        table.add_column("Value")

        table.add_row("Current profile", f"[bold cyan]{profile}[/bold cyan]")
        table.add_row("Profile source", ".db-profile (validated)")

        try:
            config = load_db_config(_config_path(args))
            if profile in config.profiles:
                p = config.profiles[profile]
                table.add_row("Provider", p.provider)
                if p.description:
                    table.add_row("Description", p.description)
            table.add_row("Backup directory", config.backup.data_dir)
        except FileNotFoundError:
            table.add_row("Warning", "[yellow]db.toml not found[/yellow]")

        console.print(table)
    else:
        console.print("[yellow]No validated profile.[/yellow]")
        console.print(
            "[dim]Run:[/dim] [cyan]DB_PROFILE=<name> tenant-backup connect[/cyan]"
        )

    return 0


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    try:
        config = load_db_config(_config_path(args))
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    current = read_profile_lock()

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        table.add_row(
            marker,
            f"[bold cyan]{name}[/bold cyan]" if name == current else name,
            profile.provider,
            profile.description or "",
        )

    console.print(table)

    if current:
        console.print("\n[bold green]*[/bold green] = current profile")

    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a global backup, or a tenant backup with ``--tenant``."""
    return _run_with_adapter(_async_backup, args)


def cmd_list(args: argparse.Namespace) -> int:
    """List local backups, newest first.

    Returns:
        0 always (informational command).
    """
    records = _catalog(args).list_backups()
    if not records:
        console.print("[yellow]No backups found.[/yellow]")
        return 0

    table = Table(title="Backups", show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Tenant")
    table.add_column("Size", justify="right")
    table.add_column("Created")

    for record in records:
        table.add_row(
            record.name,
            record.backup_type.value,
            record.tenant_id or "",
            _format_size(record.size),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a local backup by filename."""
    return _run_with_adapter(_async_restore, args)


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a local backup by filename.

    Returns:
        0 on success, 1 on invalid name, missing file or cancellation.
    """
    catalog = _catalog(args)
    try:
        catalog.resolve_path(args.filename)
    except BackupError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    if not args.yes and not _confirm(f"Delete {args.filename}?"):
        console.print("Cancelled.")
        return 1

    catalog.delete(args.filename)
    console.print(f"[bold green]v[/bold green] Deleted {args.filename}")
    return 0


def cmd_prune(args: argparse.Namespace) -> int:
    """Delete backups older than ``--days``.

    Returns:
        0 on success, 1 on an invalid tenant id.
    """
    catalog = _catalog(args)
    kind = BackupKind.TENANT if args.tenant else BackupKind.GLOBAL
    try:
        deleted = catalog.prune(args.days, kind, tenant_id=args.tenant)
    except BackupError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    if deleted:
        for name in deleted:
            console.print(f"  - {name}")
        console.print(f"[bold green]v[/bold green] Pruned {len(deleted)} backup(s)")
    else:
        console.print("Nothing to prune.", style="dim")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check an archive's structure without touching the database.

    Returns:
        0 if valid (warnings allowed), 1 otherwise.
    """
    result = validate_backup(args.backup_path, PLATFORM_SCHEMA)

    console.print(f"Validating: [cyan]{args.backup_path}[/cyan]")

    if result["errors"]:
        console.print(f"\n[bold red]Found {len(result['errors'])} error(s):[/bold red]")
        for error in result["errors"]:
            console.print(f"  - {error}")

    if result["warnings"]:
        console.print(f"\n[yellow]Found {len(result['warnings'])} warning(s):[/yellow]")
        for warning in result["warnings"]:
            console.print(f"  - {warning}")

    if result["valid"]:
        suffix = " (with warnings)" if result["warnings"] else ""
        console.print(f"\n[bold green]v[/bold green] Backup is valid{suffix}")
        return 0

    console.print("\n[bold red]x[/bold red] Backup is invalid")
    return 1


def cmd_schedule(args: argparse.Namespace) -> int:
    """Run the backup scheduler once, or until interrupted."""
    try:
        return _run_with_adapter(_async_schedule, args)
    except KeyboardInterrupt:
        console.print("\nScheduler stopped.", style="dim")
        return 0


# ============================================================================
# Main entry point
# ============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="tenant-backup",
        description="Multi-tenant database backup and restore",
    )

    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to db.toml (default: ./db.toml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_connect = subparsers.add_parser(
        "connect",
        help="Connect to database and check the backup tables exist",
    )
    p_connect.set_defaults(func=cmd_connect)

    p_status = subparsers.add_parser("status", help="Show current connection status")
    p_status.set_defaults(func=cmd_status)

    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    p_backup = subparsers.add_parser("backup", help="Create a backup")
    p_backup.add_argument(
        "--tenant",
        default=None,
        help="Back up a single tenant instead of the whole database",
    )
    p_backup.set_defaults(func=cmd_backup)

    p_list = subparsers.add_parser("list", help="List local backups")
    p_list.set_defaults(func=cmd_list)

    p_restore = subparsers.add_parser("restore", help="Restore a local backup")
    p_restore.add_argument("filename", help="Backup filename (see `list`)")
    p_restore.add_argument(
        "--tenant",
        default=None,
        help="Restore into this tenant only",
    )
    p_restore.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )
    p_restore.set_defaults(func=cmd_restore)

    p_delete = subparsers.add_parser("delete", help="Delete a local backup")
    p_delete.add_argument("filename", help="Backup filename (see `list`)")
    p_delete.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )
    p_delete.set_defaults(func=cmd_delete)

    p_prune = subparsers.add_parser("prune", help="Delete old backups")
    p_prune.add_argument(
        "--days",
        type=int,
        required=True,
        help="Retention window in days",
    )
    p_prune.add_argument(
        "--tenant",
        default=None,
        help="Prune this tenant's backups instead of global ones",
    )
    p_prune.set_defaults(func=cmd_prune)

    p_validate = subparsers.add_parser(
        "validate",
        help="Check an archive without touching the database",
    )
    p_validate.add_argument("backup_path", help="Path to the .zip archive")
    p_validate.set_defaults(func=cmd_validate)

    p_schedule = subparsers.add_parser("schedule", help="Run the backup scheduler")
    p_schedule.add_argument(
        "--once",
        action="store_true",
        help="Run a single scheduler tick and exit",
    )
    p_schedule.set_defaults(func=cmd_schedule)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
