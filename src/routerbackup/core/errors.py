"""Error taxonomy shared by the stores, the SSH client and the orchestrator."""

from __future__ import annotations

import enum
import re

REDACTED = "***"

_PASSWORD_PATTERN = re.compile(
    r"""(password)\s*[:=]\s*(?:'[^']*'?|"[^"]*"?|[^\s,;]+)""",
    re.IGNORECASE,
)


def sanitize_error(text: str) -> str:
    """Redact credential-shaped substrings from an error or log message.

    Every ``password=<value>`` / ``password: '<value>'`` occurrence becomes
    ``password=***``. The whole value is replaced even when it already starts
    with ``***``; ``password=***`` maps to itself, so repeated calls are stable.
    """

    if not text:
        return text
    return _PASSWORD_PATTERN.sub(rf"\1={REDACTED}", text)


def error_text(exc: BaseException | None) -> str:
    """Return a sanitized, non-empty description of ``exc``."""

    if exc is None:
        return "unknown error"
    message = str(exc).strip()
    return sanitize_error(message) if message else "unknown error"


class RouterBackupError(RuntimeError):
    """Base exception for RouterBackup errors."""


class ValidationError(RouterBackupError, ValueError):
    """Raised when input to a store mutation or a device profile is malformed."""


class DuplicateNameError(ValidationError):
    """Raised when a device name is already registered."""


class NotFoundError(RouterBackupError, LookupError):
    """Raised when a named device does not exist in the registry."""


class ArtifactCollisionError(ValidationError):
    """Raised when a backup would overwrite an artifact written in the same second."""


class ScheduleError(ValidationError):
    """Raised when a cron expression cannot be used for the backup schedule."""


class ConnectionKind(enum.Enum):
    """Classification of SSH connection failures."""

    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    RESET = "reset"
    UNREACHABLE = "unreachable"
    FATAL = "fatal"


class ConnectionFailure(RouterBackupError):
    """Raised when an SSH session cannot be established."""

    def __init__(self, kind: ConnectionKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def is_transient(self) -> bool:
        """Network conditions that may clear up on their own.

        Rejected credentials never do, so callers always surface those.
        """

        return self.kind is not ConnectionKind.AUTH_FAILED


class CommandError(RouterBackupError):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, detail: str, exit_status: int | None = None) -> None:
        super().__init__(detail)
        self.command = command
        self.exit_status = exit_status


class TransferError(RouterBackupError):
    """Raised when an artifact cannot be retrieved over SFTP."""


class DeliveryError(RouterBackupError):
    """Raised by a messenger when a text or file cannot be delivered."""


class StorageCorruptionError(RouterBackupError):
    """Raised internally when a persisted JSON document is malformed."""
