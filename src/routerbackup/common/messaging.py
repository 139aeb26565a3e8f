"""Messaging collaborator used to deliver notifications and artifacts."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from routerbackup.core.errors import DeliveryError, sanitize_error


class Messenger(Protocol):
    """Delivery endpoint for cycle notifications; failures raise DeliveryError."""

    def send_text(self, chat_id: str, text: str) -> None: ...

    def send_file(self, chat_id: str, path: Path, caption: str) -> None: ...


class LoggingMessenger:
    """Messenger for command-line runs: writes messages to the log."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("routerbackup.messages")

    def send_text(self, chat_id: str, text: str) -> None:
        self.logger.info("[%s] %s", chat_id, sanitize_error(text))

    def send_file(self, chat_id: str, path: Path, caption: str) -> None:
        path = Path(path)
        if not path.is_file():
            raise DeliveryError(f"File not found: {path}")
        self.logger.info("[%s] %s path=%s size=%d", chat_id, caption, path, path.stat().st_size)
