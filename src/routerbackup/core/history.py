"""Append-only history of backup cycles, newest first."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from routerbackup.core.errors import ValidationError
from routerbackup.core.models import (
    DeviceHistoryEntry,
    DeviceOutcome,
    DeviceStats,
    OverallStats,
    RunRecord,
)
from routerbackup.core.storage import JsonDocument

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000


def _success_rate(success: int, total: int) -> float:
    return round(success / total * 100, 1) if total else 0.0


def _validate_record(record: Any) -> RunRecord:
    if not isinstance(record, RunRecord):
        raise ValidationError("Invalid backup record.")
    if not isinstance(record.timestamp, datetime):
        raise ValidationError("Backup record must have a timestamp.")
    if not isinstance(record.routers, Sequence) or isinstance(record.routers, (str, bytes)):
        raise ValidationError("Backup record must have a list of router outcomes.")
    if not all(isinstance(outcome, DeviceOutcome) for outcome in record.routers):
        raise ValidationError("Backup record outcomes must be DeviceOutcome entries.")
    return record


class RunHistoryStore:
    """Run history persisted as one JSON list capped at ``limit`` records."""

    def __init__(self, path: Path, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit <= 0:
            raise ValueError("History limit must be positive.")
        self.limit = limit
        self._document = JsonDocument(Path(path), default_factory=list, validator=lambda data: isinstance(data, list))

    @property
    def path(self) -> Path:
        return self._document.path

    def append(self, record: RunRecord) -> RunRecord:
        record = _validate_record(record)
        serialized = record.to_dict()

        def mutate(entries: list[Any]) -> tuple[list[Any], RunRecord]:
            return [serialized, *entries][: self.limit], record

        self._document.update(mutate)
        logger.debug(
            "run recorded routers=%d success=%d failed=%d",
            len(record.routers),
            record.success_count,
            record.failed_count,
        )
        return record

    def list(self) -> list[RunRecord]:
        records: list[RunRecord] = []
        for entry in self._document.read():
            if not isinstance(entry, Mapping):
                continue
            try:
                records.append(RunRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("skipping malformed history entry timestamp=%s", entry.get("timestamp"))
        return records

    def device_history(self, name: str, limit: int = 50) -> list[DeviceHistoryEntry]:
        entries: list[DeviceHistoryEntry] = []
        for record in self.list():
            outcome = record.outcome_for(name)
            if outcome is None:
                continue
            entries.append(
                DeviceHistoryEntry(
                    timestamp=record.timestamp,
                    success=outcome.success,
                    error=outcome.error,
                    triggered_by_schedule=record.triggered_by_schedule,
                )
            )
            if len(entries) >= limit:
                break
        return entries

    def stats_for_device(self, name: str) -> DeviceStats:
        """Statistics for one device; consecutive failures count back from the newest run."""

        timeline = [
            (record.timestamp, outcome)
            for record in self.list()
            if (outcome := record.outcome_for(name)) is not None
        ]
        total = len(timeline)
        success = sum(1 for _, outcome in timeline if outcome.success)

        last_successful_run = next((timestamp for timestamp, outcome in timeline if outcome.success), None)

        consecutive_failures = 0
        for _, outcome in timeline:
            if outcome.success:
                break
            consecutive_failures += 1

        return DeviceStats(
            total=total,
            success=success,
            failed=total - success,
            success_rate=_success_rate(success, total),
            last_successful_run=last_successful_run,
            consecutive_failures=consecutive_failures,
        )

    def stats_overall(self) -> OverallStats:
        records = self.list()
        outcomes = [outcome for record in records for outcome in record.routers]
        total = len(outcomes)
        success = sum(1 for outcome in outcomes if outcome.success)
        return OverallStats(
            total=total,
            success=success,
            failed=total - success,
            success_rate=_success_rate(success, total),
            total_runs=len(records),
        )
