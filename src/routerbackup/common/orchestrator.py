"""Backup cycle orchestration.

One cycle walks the target devices strictly one after another: back up,
deliver both artifacts, record the outcome. Afterwards the cycle stores a
single run record, updates the consecutive-failure counters and raises an
alert for every device whose counter reached the threshold.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from routerbackup.common.messaging import Messenger
from routerbackup.common.run_summary import RunSummaryBuilder
from routerbackup.core.errors import (
    ConnectionFailure,
    DeliveryError,
    RouterBackupError,
    TransferError,
    error_text,
)
from routerbackup.core.history import RunHistoryStore
from routerbackup.core.models import ArtifactKind, BackupResult, Device, DeviceOutcome, RunRecord
from routerbackup.core.registry import DeviceRegistry

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3

BackupFn = Callable[[Device], BackupResult]


class CyclePhase(enum.Enum):
    NOTIFY_START = "notify_start"
    PER_DEVICE = "per_device"
    AGGREGATING = "aggregating"
    PERSISTING = "persisting"
    ESCALATION_CHECK = "escalation_check"
    NOTIFY_DONE = "notify_done"
    DONE = "done"


class CycleStatus(enum.Enum):
    COMPLETED = "completed"
    NO_DEVICES = "no_devices"
    DEVICE_NOT_FOUND = "device_not_found"


@dataclass(slots=True, frozen=True)
class LastRun:
    """Pointer to the most recent completed cycle, used for status queries."""

    finished_at: datetime
    routers: tuple[DeviceOutcome, ...]


@dataclass(slots=True, frozen=True)
class FailureAlert:
    device: str
    consecutive_failures: int
    error: str | None


@dataclass(slots=True, frozen=True)
class CycleResult:
    status: CycleStatus
    outcomes: tuple[DeviceOutcome, ...] = ()
    record: RunRecord | None = None
    alerts: tuple[FailureAlert, ...] = ()

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed_count(self) -> int:
        return len(self.outcomes) - self.success_count


@dataclass
class BackupState:
    """Process-local state shared by cycles: failure counters and the last run."""

    _failures: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _last_run: LastRun | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def record_result(self, device: str, success: bool) -> int:
        """Reset on success, increment on failure; return the new count."""

        with self._lock:
            count = 0 if success else self._failures.get(device, 0) + 1
            self._failures[device] = count
            return count

    def failure_count(self, device: str) -> int:
        with self._lock:
            return self._failures.get(device, 0)

    @property
    def last_run(self) -> LastRun | None:
        with self._lock:
            return self._last_run

    def set_last_run(self, last_run: LastRun) -> None:
        with self._lock:
            self._last_run = last_run


class BackupOrchestrator:
    """Run backup cycles over registered devices."""

    def __init__(
        self,
        registry: DeviceRegistry,
        history: RunHistoryStore,
        messenger: Messenger,
        backup_fn: BackupFn,
        state: BackupState | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        repeat_alerts: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("Failure threshold must be positive.")
        self.registry = registry
        self.history = history
        self.messenger = messenger
        self.backup_fn = backup_fn
        self.state = state or BackupState()
        self.failure_threshold = failure_threshold
        self.repeat_alerts = repeat_alerts
        self._clock = clock or (lambda: datetime.now().astimezone())

    def run_cycle(
        self, chat_id: str, triggered_by_schedule: bool = False, device_name: str | None = None
    ) -> CycleResult:
        devices = self.registry.list()
        if not devices:
            self._notify(chat_id, 'No devices registered yet. Add one with "devices add".')
            return CycleResult(status=CycleStatus.NO_DEVICES)

        targets = devices
        if device_name:
            device = self.registry.get(device_name)
            if device is None:
                self._notify(chat_id, f'Device "{device_name}" not found.')
                return CycleResult(status=CycleStatus.DEVICE_NOT_FOUND)
            targets = [device]

        self._phase(CyclePhase.NOTIFY_START)
        prefix = "Running scheduled backup" if triggered_by_schedule else "Running backup"
        self._notify(chat_id, f"{prefix} ({len(targets)} device(s))...")

        self._phase(CyclePhase.PER_DEVICE)
        outcomes = tuple(self._process_device(chat_id, device) for device in targets)

        self._phase(CyclePhase.AGGREGATING)
        builder = RunSummaryBuilder(
            timestamp=self._clock(),
            triggered_by_schedule=triggered_by_schedule,
            outcomes=outcomes,
        )
        record = builder.build()

        self._phase(CyclePhase.PERSISTING)
        try:
            self.history.append(record)
        except (RouterBackupError, OSError):
            logger.exception("failed to persist run history")
        self.state.set_last_run(LastRun(finished_at=record.timestamp, routers=outcomes))

        self._phase(CyclePhase.ESCALATION_CHECK)
        alerts = tuple(alert for alert in map(self._check_escalation, outcomes) if alert is not None)
        for alert in alerts:
            self._notify(
                chat_id,
                f"ALERT: backup of {alert.device} failed {alert.consecutive_failures} times in a row. "
                f"Last error: {alert.error or 'unknown error'}",
            )

        self._phase(CyclePhase.NOTIFY_DONE)
        self._notify(chat_id, builder.summary_text())
        logger.info("backup cycle finished success=%d failed=%d", builder.devices_success, builder.devices_failed)

        self._phase(CyclePhase.DONE)
        return CycleResult(status=CycleStatus.COMPLETED, outcomes=outcomes, record=record, alerts=alerts)

    def _process_device(self, chat_id: str, device: Device) -> DeviceOutcome:
        log_extra = {"device": device.name}
        logger.info("Beginning processing for device.", extra=log_extra)
        try:
            result = self.backup_fn(device)
        except TransferError as exc:
            message = f"backup created on device but retrieval failed: {error_text(exc)}"
            logger.error("%s", message, extra=log_extra)
            self._notify(chat_id, f"[{device.name}] Backup failed: {message}")
            return DeviceOutcome(name=device.name, status="retrieval_failed", error=message)
        except (RouterBackupError, OSError) as exc:
            message = error_text(exc)
            self._log_failure(device, exc, message)
            self._notify(chat_id, f"[{device.name}] Backup failed: {message}")
            return DeviceOutcome(name=device.name, status="failed", error=message)
        except Exception as exc:
            # one device never aborts the batch
            message = error_text(exc)
            logger.exception("Unexpected error while backing up device. reason=\"%s\"", message, extra=log_extra)
            self._notify(chat_id, f"[{device.name}] Backup failed: {message}")
            return DeviceOutcome(name=device.name, status="failed", error=message)

        delivery_errors: dict[str, str] = {}
        for kind, path, label in (
            (ArtifactKind.BACKUP, result.backup_path, "binary backup"),
            (ArtifactKind.EXPORT, result.export_path, "configuration export"),
        ):
            error = self._deliver(chat_id, device, Path(path), f"[{device.name}] {label} ({Path(path).name})")
            if error is not None:
                delivery_errors[kind.value] = error
                self._notify(chat_id, f"[{device.name}] Backup succeeded, but sending the {label} failed: {error}")

        logger.info("Backup completed successfully.", extra=log_extra)
        return DeviceOutcome(
            name=device.name,
            status="success",
            backup_path=str(result.backup_path),
            export_path=str(result.export_path),
            delivery_errors=delivery_errors,
        )

    def _deliver(self, chat_id: str, device: Device, path: Path, caption: str) -> str | None:
        try:
            self.messenger.send_file(chat_id, path, caption)
        except DeliveryError as exc:
            logger.error("failed to deliver file path=%s reason=\"%s\"", path, error_text(exc), extra={"device": device.name})
            return error_text(exc)
        return None

    def _check_escalation(self, outcome: DeviceOutcome) -> FailureAlert | None:
        count = self.state.record_result(outcome.name, outcome.success)
        if outcome.success:
            return None
        if count == self.failure_threshold or (self.repeat_alerts and count > self.failure_threshold):
            logger.warning("consecutive failures=%d", count, extra={"device": outcome.name})
            return FailureAlert(device=outcome.name, consecutive_failures=count, error=outcome.error)
        return None

    def _log_failure(self, device: Device, exc: Exception, message: str) -> None:
        log_extra = {"device": device.name}
        if isinstance(exc, ConnectionFailure) and exc.is_transient:
            # counter still holds the previous cycles' failures at this point
            if self.state.failure_count(device.name) > 0:
                logger.debug("backup failed again kind=%s reason=\"%s\"", exc.kind.value, message, extra=log_extra)
            else:
                logger.warning("backup failed kind=%s reason=\"%s\"", exc.kind.value, message, extra=log_extra)
            return
        logger.error("Backup failed for device. reason=\"%s\"", message, extra=log_extra)

    def _notify(self, chat_id: str, text: str) -> None:
        try:
            self.messenger.send_text(chat_id, text)
        except DeliveryError as exc:
            logger.error("failed to send message reason=\"%s\"", error_text(exc))

    @staticmethod
    def _phase(phase: CyclePhase) -> None:
        logger.debug("cycle phase=%s", phase.value)
