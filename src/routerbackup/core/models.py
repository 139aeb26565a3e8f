"""Data models for devices, backup outcomes and run history."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Mapping

DEFAULT_SSH_PORT = 22

OutcomeStatus = Literal["success", "failed", "retrieval_failed"]


@dataclass(slots=True)
class Device:
    """Connection profile of a registered router."""

    name: str
    host: str
    username: str
    password: str
    port: int = DEFAULT_SSH_PORT

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "host": self.host,
            "username": self.username,
            "password": self.password,
            "port": self.port,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Device:
        port = raw.get("port") or DEFAULT_SSH_PORT
        return cls(
            name=str(raw.get("name") or ""),
            host=str(raw.get("host") or ""),
            username=str(raw.get("username") or ""),
            password=str(raw.get("password") or ""),
            port=int(port),
        )


class ArtifactKind(enum.Enum):
    """The two files produced by one device backup."""

    BACKUP = "backup"
    EXPORT = "export"

    @property
    def extension(self) -> str:
        return "backup" if self is ArtifactKind.BACKUP else "rsc"

    @property
    def directory(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class ParsedArtifactName:
    """Metadata encoded in an artifact filename."""

    device: str
    kind: ArtifactKind
    stamp: str
    timestamp: datetime


@dataclass(slots=True)
class ArtifactFile:
    """A backup artifact found on disk."""

    device: str
    filename: str
    path: Path
    kind: ArtifactKind
    size: int
    created_at: datetime
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class BackupResult:
    """Local paths of an artifact pair downloaded from a device."""

    label: str
    device_name: str
    backup_path: Path
    export_path: Path
    cleanup_warnings: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class DeviceOutcome:
    """Result of one device within a backup cycle."""

    name: str
    status: OutcomeStatus
    error: str | None = None
    backup_path: str | None = None
    export_path: str | None = None
    delivery_errors: Mapping[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "success": self.success,
            "status": self.status,
            "error": self.error,
            "backup_path": self.backup_path,
            "export_path": self.export_path,
            "delivery_errors": dict(self.delivery_errors),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DeviceOutcome:
        status = raw.get("status")
        if status not in ("success", "failed", "retrieval_failed"):
            status = "success" if raw.get("success") else "failed"
        delivery_errors = raw.get("delivery_errors")
        return cls(
            name=str(raw.get("name") or ""),
            status=status,
            error=raw.get("error"),
            backup_path=raw.get("backup_path"),
            export_path=raw.get("export_path"),
            delivery_errors=dict(delivery_errors) if isinstance(delivery_errors, Mapping) else {},
        )


@dataclass(slots=True, frozen=True)
class RunRecord:
    """One backup cycle as stored in the run history."""

    timestamp: datetime
    routers: tuple[DeviceOutcome, ...]
    triggered_by_schedule: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.routers if outcome.success)

    @property
    def failed_count(self) -> int:
        return len(self.routers) - self.success_count

    def outcome_for(self, name: str) -> DeviceOutcome | None:
        return next((outcome for outcome in self.routers if outcome.name == name), None)

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "triggered_by_schedule": self.triggered_by_schedule,
            "routers": [outcome.to_dict() for outcome in self.routers],
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RunRecord:
        routers = raw.get("routers") or []
        return cls(
            timestamp=datetime.fromisoformat(str(raw["timestamp"])),
            routers=tuple(DeviceOutcome.from_dict(item) for item in routers if isinstance(item, Mapping)),
            triggered_by_schedule=bool(raw.get("triggered_by_schedule", False)),
        )


@dataclass(slots=True, frozen=True)
class DeviceHistoryEntry:
    """One device's result in a past cycle."""

    timestamp: datetime
    success: bool
    error: str | None
    triggered_by_schedule: bool


@dataclass(slots=True, frozen=True)
class DeviceStats:
    """Aggregated history for a single device."""

    total: int
    success: int
    failed: int
    success_rate: float
    last_successful_run: datetime | None
    consecutive_failures: int


@dataclass(slots=True, frozen=True)
class OverallStats:
    """Aggregated history across all devices."""

    total: int
    success: int
    failed: int
    success_rate: float
    total_runs: int
