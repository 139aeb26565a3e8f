"""Durable registry of router connection profiles."""

from __future__ import annotations

import ipaddress
import logging
import re
from pathlib import Path
from typing import Any, Mapping

from routerbackup.core.errors import DuplicateNameError, NotFoundError, ValidationError
from routerbackup.core.models import DEFAULT_SSH_PORT, Device
from routerbackup.core.storage import JsonDocument

logger = logging.getLogger(__name__)

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def _normalize_name(name: str) -> str:
    return name.strip().lower()


def _require_string(value: Any, field: str) -> str:
    if value is None or not isinstance(value, str):
        raise ValidationError(f"Field '{field}' is required and must be a string.")
    trimmed = value.strip() if field != "password" else value
    if not trimmed.strip():
        raise ValidationError(f"Field '{field}' must not be empty.")
    return trimmed


def validate_host(value: str) -> str:
    """Accept an IPv4 address or an RFC-1123 hostname."""

    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        pass

    candidate = value[:-1] if value.endswith(".") else value
    if len(candidate) > 253 or not candidate:
        raise ValidationError(f"Invalid host '{value}'.")
    labels = candidate.split(".")
    if all(label.isdigit() for label in labels):
        raise ValidationError(f"Invalid IPv4 address '{value}'.")
    if not all(_HOSTNAME_LABEL.match(label) for label in labels):
        raise ValidationError(f"Invalid host '{value}'.")
    return value


def validate_port(value: Any) -> int:
    if value is None or value == "":
        return DEFAULT_SSH_PORT
    if isinstance(value, bool):
        raise ValidationError("Port must be an integer.")
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Port must be an integer.") from exc
    if port <= 0 or port > 65535:
        raise ValidationError("Port must be between 1 and 65535.")
    return port


def validate_device(device: Device | Mapping[str, Any]) -> Device:
    """Return a normalized copy of ``device`` or raise :class:`ValidationError`."""

    if isinstance(device, Device):
        raw: Mapping[str, Any] = device.to_dict()
    elif isinstance(device, Mapping):
        raw = device
    else:
        raise ValidationError("Invalid device data.")

    name = _require_string(raw.get("name"), "name")
    host = validate_host(_require_string(raw.get("host"), "host"))
    username = _require_string(raw.get("username"), "username")
    password = _require_string(raw.get("password"), "password")
    port = validate_port(raw.get("port"))
    return Device(name=name, host=host, username=username, password=password, port=port)


class DeviceRegistry:
    """Ordered list of devices persisted as one JSON document."""

    def __init__(self, path: Path) -> None:
        self._document = JsonDocument(Path(path), default_factory=list, validator=lambda data: isinstance(data, list))

    @property
    def path(self) -> Path:
        return self._document.path

    def list(self) -> list[Device]:
        devices: list[Device] = []
        for index, entry in enumerate(self._document.read(), start=1):
            if not isinstance(entry, Mapping) or not entry.get("name"):
                logger.warning("skipping malformed registry entry index=%d", index)
                continue
            try:
                devices.append(Device.from_dict(entry))
            except (TypeError, ValueError):
                logger.warning("skipping malformed registry entry index=%d", index)
        return devices

    def get(self, name: str) -> Device | None:
        """Find a device by trimmed, case-insensitive name."""

        if not name or not name.strip():
            return None
        target = _normalize_name(name)
        return next((device for device in self.list() if _normalize_name(device.name) == target), None)

    def add(self, device: Device | Mapping[str, Any]) -> Device:
        candidate = validate_device(device)
        target = _normalize_name(candidate.name)

        def mutate(entries: list[Any]) -> tuple[list[Any], Device]:
            for entry in entries:
                if isinstance(entry, Mapping) and _normalize_name(str(entry.get("name") or "")) == target:
                    raise DuplicateNameError(f"Device name '{candidate.name}' is already in use.")
            return [*entries, candidate.to_dict()], candidate

        added = self._document.update(mutate)
        logger.info("device registered host=%s port=%s", added.host, added.port, extra={"device": added.name})
        return added

    def remove(self, name: str) -> Device:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Device name must not be empty.")
        target = _normalize_name(name)

        def mutate(entries: list[Any]) -> tuple[list[Any], Device]:
            kept: list[Any] = []
            removed: Device | None = None
            for entry in entries:
                if (
                    removed is None
                    and isinstance(entry, Mapping)
                    and _normalize_name(str(entry.get("name") or "")) == target
                ):
                    removed = Device.from_dict(entry)
                    continue
                kept.append(entry)
            if removed is None:
                raise NotFoundError(f"Device '{name.strip()}' not found.")
            return kept, removed

        removed = self._document.update(mutate)
        logger.info("device removed", extra={"device": removed.name})
        return removed
