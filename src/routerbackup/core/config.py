"""Configuration helpers for RouterBackup.

Settings come from the optional ``config/local.yml`` file, environment
variables override file values and command-line flags override both.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_LOCAL_CONFIG = PROJECT_ROOT / "config" / "local.yml"
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"
FALLBACK_BACKUP_DIR = PROJECT_ROOT / "backups"

DEFAULT_CRON_SCHEDULE = "0 18 * * *"
DEFAULT_TIMEZONE = "Asia/Jakarta"

ROUTERS_FILENAME = "routers.json"
HISTORY_FILENAME = "backup_history.json"
SCHEDULE_FILENAME = "schedule.json"


class SettingsError(ValueError):
    """Raised when local.yml or the environment holds an invalid value."""


@dataclass(slots=True, frozen=True)
class Settings:
    """Runtime settings with their defaults."""

    data_dir: Path = DEFAULT_DATA_DIR
    backup_dir: Path = FALLBACK_BACKUP_DIR
    cron_schedule: str = DEFAULT_CRON_SCHEDULE
    timezone: str = DEFAULT_TIMEZONE
    default_chat_id: str | None = None
    connect_timeout: float = 10.0
    failure_alert_threshold: int = 3
    repeat_failure_alerts: bool = True
    history_limit: int = 1000

    @property
    def routers_path(self) -> Path:
        return self.data_dir / ROUTERS_FILENAME

    @property
    def history_path(self) -> Path:
        return self.data_dir / HISTORY_FILENAME

    @property
    def schedule_path(self) -> Path:
        return self.data_dir / SCHEDULE_FILENAME


def load_local_config(
    config_path: str | Path | None = None, logger: logging.Logger | None = None
) -> Mapping[str, Any] | None:
    """Load local.yml if it exists and return the mapping."""

    config_file = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG
    if not config_file.is_absolute():
        config_file = PROJECT_ROOT / config_file

    if logger:
        logger.debug("loading local config from %s", config_file)

    if not config_file.exists():
        if logger:
            logger.debug("local config not found at %s", config_file)
        return None

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        if logger:
            logger.warning("unable to read local config file=%s reason=\"%s\"", config_file, exc)
        return None

    return data if isinstance(data, Mapping) else None


def _section(local_cfg: Mapping[str, Any] | None, name: str) -> Mapping[str, Any]:
    if not isinstance(local_cfg, Mapping):
        return {}
    section = local_cfg.get(name)
    return section if isinstance(section, Mapping) else {}


def _path_value(value: Any) -> Path | None:
    if not value:
        return None
    candidate = Path(str(value)).expanduser()
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate
    return candidate


def _int_value(value: Any, key: str, minimum: int = 1) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SettingsError(f"{key} must be an integer.")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"{key} must be an integer.") from exc
    if number < minimum:
        raise SettingsError(f"{key} must be at least {minimum}.")
    return number


def _float_value(value: Any, key: str) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SettingsError(f"{key} must be a number.")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"{key} must be a number.") from exc
    if number <= 0:
        raise SettingsError(f"{key} must be positive.")
    return number


def load_settings(
    local_cfg: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Merge defaults, local.yml sections and environment overrides."""

    environ = os.environ if environ is None else environ
    storage = _section(local_cfg, "storage")
    backup = _section(local_cfg, "backup")
    notify = _section(local_cfg, "notify")
    ssh = _section(local_cfg, "ssh")
    alerts = _section(local_cfg, "alerts")

    settings = Settings()
    overrides: dict[str, Any] = {}

    data_dir = _path_value(environ.get("ROUTERBACKUP_DATA_DIR") or storage.get("data_dir"))
    if data_dir:
        overrides["data_dir"] = data_dir

    backup_dir = _path_value(environ.get("BACKUP_DIRECTORY") or backup.get("directory"))
    if backup_dir:
        overrides["backup_dir"] = backup_dir

    cron_schedule = environ.get("BACKUP_CRON_SCHEDULE") or backup.get("cron_schedule")
    if cron_schedule:
        overrides["cron_schedule"] = str(cron_schedule).strip()

    timezone = environ.get("ROUTER_TIMEZONE") or backup.get("timezone")
    if timezone:
        overrides["timezone"] = str(timezone).strip()

    chat_id = environ.get("DEFAULT_CHAT_ID") or notify.get("default_chat_id")
    if chat_id:
        overrides["default_chat_id"] = str(chat_id).strip()

    timeout = _float_value(environ.get("SSH_CONNECT_TIMEOUT") or ssh.get("connect_timeout"), "ssh.connect_timeout")
    if timeout is not None:
        overrides["connect_timeout"] = timeout

    threshold = _int_value(alerts.get("failure_threshold"), "alerts.failure_threshold")
    if threshold is not None:
        overrides["failure_alert_threshold"] = threshold

    repeat = alerts.get("repeat")
    if repeat is not None:
        if not isinstance(repeat, bool):
            raise SettingsError("alerts.repeat must be true or false.")
        overrides["repeat_failure_alerts"] = repeat

    history_limit = _int_value(storage.get("history_limit"), "storage.history_limit")
    if history_limit is not None:
        overrides["history_limit"] = history_limit

    return replace(settings, **overrides)


def _probe_directory(path: Path) -> tuple[bool, str | None]:
    """Try to create and write to the directory, returning success and reason."""

    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / ".write-test"
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("probe")
        test_file.unlink(missing_ok=True)
        return True, None
    except OSError as exc:
        return False, str(exc)


def resolve_backup_dir(cli_backup_dir: str | Path | None, settings: Settings, logger: logging.Logger) -> Path:
    """Determine the backup directory with priority: CLI > settings > fallback."""

    candidates: list[tuple[str, Path]] = []

    if cli_backup_dir:
        candidates.append(("cli", Path(cli_backup_dir).expanduser()))
    if settings.backup_dir != FALLBACK_BACKUP_DIR:
        candidates.append(("settings", settings.backup_dir))

    for source, candidate in candidates:
        ok, reason = _probe_directory(candidate)
        if ok:
            logger.info("backup_dir source=%s path=%s", source, candidate)
            return candidate

        logger.warning(
            'backup_dir source=%s path=%s fallback=%s reason="%s"',
            source,
            candidate,
            FALLBACK_BACKUP_DIR,
            reason or "unavailable",
        )

    ok, fallback_reason = _probe_directory(FALLBACK_BACKUP_DIR)
    if not ok:
        logger.error(
            'backup_dir fallback=%s reason="%s"', FALLBACK_BACKUP_DIR, fallback_reason or "unavailable"
        )
        raise OSError(f"Unable to use fallback backup directory: {FALLBACK_BACKUP_DIR}")

    logger.info("backup_dir source=fallback path=%s", FALLBACK_BACKUP_DIR)
    return FALLBACK_BACKUP_DIR
