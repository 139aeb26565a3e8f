"""Backup helpers for MikroTik devices."""

from __future__ import annotations

import logging
from pathlib import Path

from routerbackup.core.errors import ValidationError
from routerbackup.core.models import BackupResult, Device
from routerbackup.mikrotik.client import DEFAULT_CONNECT_TIMEOUT, MikroTikClient


def build_client(device: Device, timeout: float = DEFAULT_CONNECT_TIMEOUT, logger: logging.Logger | None = None) -> MikroTikClient:
    """Create a client for ``device`` after checking its credentials."""

    if not device.host or not device.username or not device.password:
        raise ValidationError(f"Device '{device.name}' must have host, username and password.")

    return MikroTikClient(
        host=device.host,
        username=device.username,
        password=device.password,
        port=device.port,
        timeout=timeout,
        logger=logger or logging.getLogger(__name__),
        log_extra={"device": device.name or device.host},
    )


def perform_backup(
    device: Device,
    backup_root: Path,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    logger: logging.Logger | None = None,
) -> BackupResult:
    """Create and download the binary backup and export for a MikroTik device."""

    client = build_client(device, timeout, logger)
    return client.perform_backup(device.name, Path(backup_root))


def test_connection(
    device: Device, timeout: float = DEFAULT_CONNECT_TIMEOUT, logger: logging.Logger | None = None
) -> str:
    """Open a session, print system resources and disconnect."""

    client = build_client(device, timeout, logger)
    return client.test_connection()
