"""Backup scheduler: decides when global and tenant backups are due.

Schedules live in the ``settings`` table.  Global rows have
``tenant_id IS NULL``; tenant rows override the tenant defaults.

Keys (``<prefix>`` is ``backup_global``, ``backup_tenant`` or, per
tenant, ``backup``)::

    <prefix>_enabled         "true" / "false"
    <prefix>_trigger         manual "run now", cleared after a run
    <prefix>_mode            minute | hour | day | week
    <prefix>_every           interval for minute/hour modes (default 15)
    <prefix>_at              HH:MM for day/week modes, in app_timezone
    <prefix>_weekday         mon..sun for week mode (default sun)
    <prefix>_retention_days  prune archives older than this (0 keeps all)
    <prefix>_last_run        RFC3339 time of the last successful run
    <prefix>_schedule        legacy daily schedule ("0 2 * * *", "02:00", "@daily")

Usage:
    scheduler = BackupScheduler(adapter, PLATFORM_SCHEMA, catalog)
    await scheduler.run_once()      # one tick
    await scheduler.run_forever()   # tick every interval_seconds
"""

import asyncio
import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import DBAPIError

from tenant_backup.adapters.base import DatabaseClient
from tenant_backup.backup.backup_restore import backup_database
from tenant_backup.backup.catalog import BackupCatalog
from tenant_backup.backup.coercion import parse_timestamp
from tenant_backup.backup.errors import BackupError
from tenant_backup.backup.models import BackupKind, BackupSchema
from tenant_backup.backup.packager import ArchivePackager

logger = logging.getLogger(__name__)

GLOBAL_PREFIX = "backup_global"
TENANT_DEFAULTS_PREFIX = "backup_tenant"
TENANT_PREFIX = "backup"

GLOBAL_DEFAULT_AT = "02:00"
TENANT_DEFAULT_AT = "02:30"
LEGACY_DEFAULT_SCHEDULE = "0 2 * * *"
DEFAULT_EVERY = 15
DEFAULT_WEEKDAY = 7  # Sunday
GLOBAL_RETENTION_DAYS = 30
TENANT_RETENTION_DAYS = 14

SCHEDULER_LOCK_NAME = "backup_scheduler"


# ============================================================================
# Cadence parsing
# ============================================================================


class ScheduleMode(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


@dataclass(frozen=True)
class DailySchedule:
    """Time of day, interpreted in the app timezone."""

    hour: int
    minute: int


@dataclass(frozen=True)
class ScheduleConfig:
    mode: ScheduleMode
    every: int
    at: DailySchedule
    weekday: int  # 1=Mon .. 7=Sun

    def is_due(self, now: datetime, last_run: datetime | None, tz: ZoneInfo) -> bool:
        if self.mode in (ScheduleMode.MINUTE, ScheduleMode.HOUR):
            return should_run_interval(now, last_run, self.every, self.mode)
        if self.mode is ScheduleMode.DAY:
            return should_run_daily(now, last_run, self.at, tz)
        return should_run_weekly(now, last_run, self.weekday, self.at, tz)


_MODES = {
    "minute": ScheduleMode.MINUTE,
    "minutes": ScheduleMode.MINUTE,
    "hour": ScheduleMode.HOUR,
    "hours": ScheduleMode.HOUR,
    "day": ScheduleMode.DAY,
    "daily": ScheduleMode.DAY,
    "week": ScheduleMode.WEEK,
    "weekly": ScheduleMode.WEEK,
}

_WEEKDAYS = {
    "mon": 1, "monday": 1,
    "tue": 2, "tuesday": 2,
    "wed": 3, "wednesday": 3,
    "thu": 4, "thursday": 4,
    "fri": 5, "friday": 5,
    "sat": 6, "saturday": 6,
    "sun": 7, "sunday": 7,
}


def parse_mode(raw: str) -> ScheduleMode | None:
    return _MODES.get(raw.strip().lower())


def parse_hhmm(raw: str) -> tuple[int, int] | None:
    """Parse ``HH:MM`` (24h)."""
    parts = raw.strip().split(":")
    if len(parts) != 2:
        return None
    try:
        hour, minute = int(parts[0].strip()), int(parts[1].strip())
    except ValueError:
        return None
    if 0 <= hour < 24 and 0 <= minute < 60:
        return hour, minute
    return None


def parse_weekday(raw: str) -> int | None:
    return _WEEKDAYS.get(raw.strip().lower())


def parse_daily_schedule(raw: str) -> DailySchedule | None:
    """Parse a legacy daily schedule.

    Accepts ``@daily`` / ``daily`` (midnight), ``HH:MM``, or a cron string
    whose day, month and weekday fields are all ``*`` (``"30 2 * * *"``).
    """
    value = raw.strip()
    if not value:
        return None
    if value.lower() in ("@daily", "daily"):
        return DailySchedule(0, 0)

    if ":" in value:
        parsed = parse_hhmm(value)
        return DailySchedule(*parsed) if parsed else None

    fields = value.split()
    if len(fields) != 5 or fields[2:] != ["*", "*", "*"]:
        return None
    try:
        minute, hour = int(fields[0]), int(fields[1])
    except ValueError:
        return None
    if 0 <= hour < 24 and 0 <= minute < 60:
        return DailySchedule(hour, minute)
    return None


# ============================================================================
# Cadence evaluation
# ============================================================================


def scheduled_time_for_day(day: date, schedule: DailySchedule, tz: ZoneInfo) -> datetime:
    """The UTC instant of ``schedule`` on a local calendar day."""
    local = datetime.combine(day, time(schedule.hour, schedule.minute), tzinfo=tz)
    return local.astimezone(timezone.utc)


def scheduled_time_for_week(
    day: date, weekday: int, schedule: DailySchedule, tz: ZoneInfo
) -> datetime:
    """The first ``weekday`` on or after ``day``, at ``schedule``."""
    delta_days = (weekday - day.isoweekday()) % 7
    return scheduled_time_for_day(day + timedelta(days=delta_days), schedule, tz)


def should_run_interval(
    now: datetime, last_run: datetime | None, every: int, mode: ScheduleMode
) -> bool:
    every = max(every, 1)
    if mode is ScheduleMode.MINUTE:
        period = timedelta(minutes=every)
    elif mode is ScheduleMode.HOUR:
        period = timedelta(hours=every)
    else:
        return False
    return last_run is None or now - last_run >= period


def should_run_daily(
    now: datetime, last_run: datetime | None, schedule: DailySchedule, tz: ZoneInfo
) -> bool:
    """Due once the local time passes today's slot and the last run predates it."""
    today = now.astimezone(tz).date()
    scheduled_today = scheduled_time_for_day(today, schedule, tz)
    if now < scheduled_today:
        return False
    return last_run is None or last_run < scheduled_today


def should_run_weekly(
    now: datetime,
    last_run: datetime | None,
    weekday: int,
    schedule: DailySchedule,
    tz: ZoneInfo,
) -> bool:
    """Due once per week at ``weekday`` + ``schedule`` in the app timezone.

    Before this week's slot, a run is only due if the previous slot was
    missed (a last run exists and predates it).
    """
    today = now.astimezone(tz).date()
    this_week = scheduled_time_for_week(today, weekday, schedule, tz)
    if now < this_week:
        last_week = scheduled_time_for_week(today - timedelta(days=7), weekday, schedule, tz)
        return last_run is not None and last_run < last_week
    return last_run is None or last_run < this_week


# ============================================================================
# Settings access
# ============================================================================


class SettingsStore:
    """Read and upsert rows of the ``settings`` table."""

    TABLE = "settings"

    def __init__(self, adapter: DatabaseClient) -> None:
        self._adapter = adapter

    async def get_value(self, tenant_id: str | None, key: str) -> str | None:
        rows = await self._adapter.select(
            self.TABLE, "value", filters={"tenant_id": tenant_id, "key": key}
        )
        return rows[0]["value"] if rows else None

    async def upsert(
        self, tenant_id: str | None, key: str, value: str, description: str | None = None
    ) -> None:
        now = datetime.now(timezone.utc)
        rows = await self._adapter.select(
            self.TABLE, "id", filters={"tenant_id": tenant_id, "key": key}
        )
        if rows:
            await self._adapter.update(
                self.TABLE, {"value": value, "updated_at": now}, {"id": rows[0]["id"]}
            )
            return
        await self._adapter.insert(self.TABLE, {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "key": key,
            "value": value,
            "description": description,
            "created_at": now,
            "updated_at": now,
        })

    async def get_bool(self, tenant_id: str | None, key: str, default: bool) -> bool:
        raw = await self.get_value(tenant_id, key)
        if raw is None:
            return default
        return raw in ("true", "1") or raw.lower() == "yes"

    async def get_int(self, tenant_id: str | None, key: str, default: int) -> int:
        raw = await self.get_value(tenant_id, key)
        try:
            return int(raw) if raw is not None else default
        except ValueError:
            return default

    async def get_datetime(self, tenant_id: str | None, key: str) -> datetime | None:
        raw = await self.get_value(tenant_id, key)
        return parse_timestamp(raw) if raw else None

    async def set_bool(
        self, tenant_id: str | None, key: str, value: bool, description: str | None = None
    ) -> None:
        await self.upsert(tenant_id, key, "true" if value else "false", description)

    async def set_datetime(
        self, tenant_id: str | None, key: str, value: datetime, description: str | None = None
    ) -> None:
        await self.upsert(tenant_id, key, value.astimezone(timezone.utc).isoformat(), description)


# ============================================================================
# Scheduler
# ============================================================================


class BackupScheduler:
    """Run due global and tenant backups, one tick at a time.

    An ``asyncio.Lock`` keeps ticks from overlapping in-process; on
    Postgres a session advisory lock keeps other processes out too.
    """

    def __init__(
        self,
        adapter: DatabaseClient,
        schema: BackupSchema,
        catalog: BackupCatalog,
        packager: ArchivePackager | None = None,
        interval_seconds: int = 60,
        default_timezone: str = "UTC",
    ) -> None:
        self._adapter = adapter
        self._schema = schema
        self._catalog = catalog
        self._packager = packager or ArchivePackager()
        self.interval_seconds = interval_seconds
        self.default_timezone = default_timezone
        self.settings = SettingsStore(adapter)
        self.lock = asyncio.Lock()

    async def run_once(self, now: datetime | None = None) -> list[str]:
        """Evaluate every schedule once and run what is due.

        Returns:
            Paths of the archives created in this tick.
        """
        if self.lock.locked():
            logger.info("Backup scheduler tick skipped: previous run still in progress")
            return []

        async with self.lock:
            async with self._cross_process_lock() as acquired:
                if not acquired:
                    logger.debug("Backup scheduler lock held by another process")
                    return []
                now = now or datetime.now(timezone.utc)
                tz = await self.app_timezone()
                created = await self._run_global(now, tz)
                created += await self._run_tenants(now, tz)
                return created

    async def run_forever(self) -> None:
        """Tick every ``interval_seconds`` until cancelled."""
        logger.info("Backup scheduler started")
        warned_missing_schema = False
        while True:
            try:
                await self.run_once()
            except DBAPIError as e:
                message = str(e.orig or e)
                if "does not exist" in message:
                    if not warned_missing_schema:
                        warned_missing_schema = True
                        logger.warning(
                            "Backup scheduler paused: database schema not migrated yet "
                            f"({message})"
                        )
                else:
                    logger.error(f"Backup schedule check failed: {message}")
            except BackupError as e:
                logger.error(f"Scheduled backup failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    def _cross_process_lock(self):
        if self._adapter.dialect == "postgresql":
            return self._adapter.advisory_lock(SCHEDULER_LOCK_NAME)
        return nullcontext(True)

    async def app_timezone(self) -> ZoneInfo:
        raw = await self.settings.get_value(None, "app_timezone") or self.default_timezone
        try:
            return ZoneInfo(raw)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid app_timezone '{raw}'; falling back to UTC")
            return ZoneInfo("UTC")

    async def load_schedule(
        self,
        tenant_id: str | None,
        prefix: str,
        default_at: str,
        legacy_default: str | None = LEGACY_DEFAULT_SCHEDULE,
    ) -> ScheduleConfig | None:
        """Read ``<prefix>_mode`` and friends, falling back to ``<prefix>_schedule``.

        Returns ``None`` when nothing valid is configured.
        """
        store = self.settings
        mode_raw = await store.get_value(tenant_id, f"{prefix}_mode")
        if mode_raw is not None:
            mode = parse_mode(mode_raw)
            if mode is None:
                logger.warning(f"Invalid {prefix}_mode value '{mode_raw}'")
                return None
            every = await store.get_int(tenant_id, f"{prefix}_every", DEFAULT_EVERY)
            at_raw = await store.get_value(tenant_id, f"{prefix}_at") or default_at
            hour, minute = parse_hhmm(at_raw) or parse_hhmm(default_at)
            weekday_raw = await store.get_value(tenant_id, f"{prefix}_weekday")
            weekday = (parse_weekday(weekday_raw) if weekday_raw else None) or DEFAULT_WEEKDAY
            return ScheduleConfig(mode, every, DailySchedule(hour, minute), weekday)

        legacy = await store.get_value(tenant_id, f"{prefix}_schedule") or legacy_default
        if legacy is None:
            return None
        daily = parse_daily_schedule(legacy)
        if daily is None:
            logger.warning(f"Invalid {prefix}_schedule value '{legacy}'")
            return None
        return ScheduleConfig(ScheduleMode.DAY, 0, daily, DEFAULT_WEEKDAY)

    async def has_own_schedule(self, tenant_id: str | None, prefix: str) -> bool:
        """Whether ``<prefix>_mode`` or ``<prefix>_schedule`` is set for this owner."""
        for key in (f"{prefix}_mode", f"{prefix}_schedule"):
            if await self.settings.get_value(tenant_id, key):
                return True
        return False

    async def list_active_tenants(self) -> list[str]:
        rows = await self._adapter.fetch("SELECT id FROM tenants WHERE is_active = true")
        return [str(row["id"]) for row in rows]

    # ------------------------------------------------------------------
    # Global / tenant runs
    # ------------------------------------------------------------------

    async def _run_global(self, now: datetime, tz: ZoneInfo) -> list[str]:
        store = self.settings
        trigger = await store.get_bool(None, f"{GLOBAL_PREFIX}_trigger", False)
        enabled = await store.get_bool(None, f"{GLOBAL_PREFIX}_enabled", False)
        if not enabled and not trigger:
            return []

        last_run = await store.get_datetime(None, f"{GLOBAL_PREFIX}_last_run")
        if not trigger:
            config = await self.load_schedule(None, GLOBAL_PREFIX, GLOBAL_DEFAULT_AT)
            if config is None:
                logger.warning("Invalid global backup schedule; skipping")
                return []
            if not config.is_due(now, last_run, tz):
                return []

        path = await backup_database(
            self._adapter, self._schema, self._catalog, packager=self._packager
        )
        await store.set_datetime(
            None, f"{GLOBAL_PREFIX}_last_run", now, "Last successful global backup run (UTC)"
        )

        retention = await store.get_int(
            None, f"{GLOBAL_PREFIX}_retention_days", GLOBAL_RETENTION_DAYS
        )
        self._catalog.prune(retention, BackupKind.GLOBAL, now=now)

        if trigger:
            await store.set_bool(
                None, f"{GLOBAL_PREFIX}_trigger", False, "Manual trigger for global backup"
            )
        return [path]

    async def _run_tenants(self, now: datetime, tz: ZoneInfo) -> list[str]:
        store = self.settings
        trigger = await store.get_bool(None, f"{TENANT_DEFAULTS_PREFIX}_trigger", False)
        enabled = await store.get_bool(None, f"{TENANT_DEFAULTS_PREFIX}_enabled", False)
        if not enabled and not trigger:
            return []

        default_config = await self.load_schedule(
            None, TENANT_DEFAULTS_PREFIX, TENANT_DEFAULT_AT
        )
        default_retention = await store.get_int(
            None, f"{TENANT_DEFAULTS_PREFIX}_retention_days", TENANT_RETENTION_DAYS
        )

        created: list[str] = []
        for tenant_id in await self.list_active_tenants():
            if not await store.get_bool(tenant_id, f"{TENANT_PREFIX}_enabled", True):
                continue

            last_run = await store.get_datetime(tenant_id, f"{TENANT_PREFIX}_last_run")
            if not trigger:
                if await self.has_own_schedule(tenant_id, TENANT_PREFIX):
                    config = await self.load_schedule(
                        tenant_id, TENANT_PREFIX, TENANT_DEFAULT_AT, legacy_default=None
                    )
                else:
                    config = default_config
                if config is None:
                    logger.warning(f"Invalid backup schedule for tenant {tenant_id}; skipping")
                    continue
                if not config.is_due(now, last_run, tz):
                    continue

            try:
                path = await backup_database(
                    self._adapter,
                    self._schema,
                    self._catalog,
                    tenant_id=tenant_id,
                    packager=self._packager,
                )
            except BackupError as e:
                logger.error(f"Failed to create tenant backup for {tenant_id}: {e}")
                continue
            created.append(path)

            await store.set_datetime(
                tenant_id, f"{TENANT_PREFIX}_last_run", now,
                "Last successful tenant backup run (UTC)",
            )
            retention = await store.get_int(
                tenant_id, f"{TENANT_PREFIX}_retention_days", default_retention
            )
            self._catalog.prune(retention, BackupKind.TENANT, tenant_id, now=now)

        if trigger:
            await store.set_bool(
                None, f"{TENANT_DEFAULTS_PREFIX}_trigger", False,
                "Manual trigger for tenant backups",
            )
        return created
