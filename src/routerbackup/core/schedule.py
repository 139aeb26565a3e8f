"""Cron-style scheduling of backup cycles and the persisted custom schedule."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from routerbackup.core.errors import ScheduleError
from routerbackup.core.storage import JsonDocument

logger = logging.getLogger(__name__)

FALLBACK_TIMEZONE = "UTC"
JOB_ID = "routerbackup-cycle"


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the named zone, falling back to UTC when it is unknown."""

    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown timezone=%s, falling back to %s", name, FALLBACK_TIMEZONE)
    return ZoneInfo(FALLBACK_TIMEZONE)


def validate_cron(expression: str, timezone: ZoneInfo) -> CronTrigger:
    """Build a trigger for a five-field cron expression or raise :class:`ScheduleError`."""

    value = (expression or "").strip()
    if not value:
        raise ScheduleError("Cron expression must not be empty.")
    if len(value.split()) != 5:
        raise ScheduleError(
            "Invalid cron expression. Expected five fields: minute hour day month day-of-week "
            "(example: 0 18 * * *)."
        )
    try:
        return CronTrigger.from_crontab(value, timezone=timezone)
    except ValueError as exc:
        raise ScheduleError(f"Invalid cron expression '{value}': {exc}") from exc


def _is_schedule_document(data: Any) -> bool:
    return isinstance(data, Mapping) and (data.get("cron") is None or isinstance(data.get("cron"), str))


class ScheduleStore:
    """Singleton custom schedule persisted next to the other documents."""

    def __init__(self, path: Path) -> None:
        self._document = JsonDocument(Path(path), default_factory=lambda: {"cron": None}, validator=_is_schedule_document)

    def get(self) -> str | None:
        return self._document.read().get("cron") or None

    def set(self, expression: str) -> str:
        value = expression.strip()
        self._document.write({"cron": value})
        return value

    def clear(self) -> None:
        self._document.write({"cron": None})


class BackupScheduler:
    """Fire ``callback`` on a cron schedule; the custom expression wins over the default."""

    def __init__(
        self,
        callback: Callable[[], Any],
        default_expression: str,
        timezone: str | None,
        store: ScheduleStore | None = None,
    ) -> None:
        self.callback = callback
        self.timezone = resolve_timezone(timezone)
        self.default_expression = default_expression
        self.store = store
        self._scheduler = BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        self._lock = threading.Lock()
        self._trigger: CronTrigger | None = None

    @property
    def expression(self) -> str:
        custom = self.store.get() if self.store else None
        return custom or self.default_expression

    @property
    def is_enabled(self) -> bool:
        return self._trigger is not None

    def enable(self) -> None:
        trigger = validate_cron(self.expression, self.timezone)
        with self._lock:
            self._scheduler.add_job(self.callback, trigger, id=JOB_ID, replace_existing=True)
            self._trigger = trigger
            if not self._scheduler.running:
                self._scheduler.start()
        logger.info("automatic backup enabled schedule=\"%s\" timezone=%s", self.expression, self.timezone.key)

    def disable(self) -> bool:
        with self._lock:
            if self._trigger is None:
                return False
            self._scheduler.remove_job(JOB_ID)
            self._trigger = None
        logger.info("automatic backup disabled")
        return True

    def set_expression(self, expression: str) -> str:
        """Validate, persist and, when enabled, apply a new schedule."""

        validate_cron(expression, self.timezone)
        value = self.store.set(expression) if self.store else expression.strip()
        if self.store is None:
            self.default_expression = value
        if self.is_enabled:
            self.enable()
        return value

    def next_fire_time(self) -> datetime | None:
        with self._lock:
            trigger = self._trigger
        if trigger is None:
            return None
        return trigger.get_next_fire_time(None, datetime.now(self.timezone))

    def shutdown(self) -> None:
        with self._lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._trigger = None
