"""Helpers for aggregating per-device outcomes into a run record."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from routerbackup.core.models import DeviceOutcome, RunRecord


def format_moment(moment: datetime | None) -> str:
    return moment.strftime("%A, %d %B %Y %H:%M") if moment else "-"


class RunSummaryBuilder:
    """Accumulate device outcomes of one cycle and build the run record."""

    def __init__(
        self,
        *,
        timestamp: datetime,
        triggered_by_schedule: bool,
        outcomes: Iterable[DeviceOutcome] = (),
    ) -> None:
        self.timestamp = timestamp
        self.triggered_by_schedule = triggered_by_schedule
        self.devices_success = 0
        self.devices_failed = 0
        self.deliveries_failed = 0
        self._outcomes: list[DeviceOutcome] = []
        for outcome in outcomes:
            self.add_outcome(outcome)

    def add_outcome(self, outcome: DeviceOutcome) -> None:
        self._outcomes.append(outcome)
        if outcome.success:
            self.devices_success += 1
        else:
            self.devices_failed += 1
        self.deliveries_failed += len(outcome.delivery_errors)

    @property
    def devices_total(self) -> int:
        return len(self._outcomes)

    def build(self) -> RunRecord:
        return RunRecord(
            timestamp=self.timestamp,
            routers=tuple(self._outcomes),
            triggered_by_schedule=self.triggered_by_schedule,
        )

    def summary_text(self) -> str:
        text = (
            f"Backup finished {format_moment(self.timestamp)}. "
            f"Success: {self.devices_success}, Failed: {self.devices_failed}."
        )
        if self.deliveries_failed:
            text += f" Undelivered files: {self.deliveries_failed}."
        return text
