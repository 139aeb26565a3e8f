"""Logging setup for RouterBackup.

The ``logging`` section of ``config/local.yml`` (``directory``, ``filename``,
``level``) picks the log file; an unwritable directory falls back to
``./logs``. Every handler fills in the ``device`` field and masks router
passwords before a record is written.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Mapping

from routerbackup.core.config import DEFAULT_LOCAL_CONFIG, load_local_config
from routerbackup.core.errors import sanitize_error

LOG_DIRECTORY = Path("/var/log/routerbackup")
LOG_FILENAME = "routerbackup.log"
LOG_FALLBACK_DIRECTORY = Path("./logs")

LOG_FORMAT = "%(asctime)s | %(levelname)s | device=%(device)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUIET_LIBRARIES = ("paramiko", "apscheduler")


class DeviceContextFilter(logging.Filter):
    """Default ``record.device`` to ``-`` for records logged without one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "device", None):
            record.device = "-"
        return True


class SecretScrubberFilter(logging.Filter):
    """Mask ``password=...`` values in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = sanitize_error(rendered)
        if masked != rendered:
            record.msg, record.args = masked, ()
        return True


def _level(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        resolved = logging.getLevelName(value.strip().upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO


def _writable(directory: Path) -> bool:
    try:
        directory.mkdir(parents=True, exist_ok=True)
        marker = directory / ".write-test"
        marker.touch()
        marker.unlink(missing_ok=True)
    except OSError:
        return False
    return True


def _handlers(log_file: Path) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        logging.FileHandler(log_file, encoding="utf-8"),
        logging.StreamHandler(sys.stdout),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(DeviceContextFilter())
        handler.addFilter(SecretScrubberFilter())
    return handlers


def setup_logging(config_path: str | Path | None = DEFAULT_LOCAL_CONFIG, cli_level: int | None = None) -> logging.Logger:
    """Install the file and stdout handlers on the root logger.

    ``cli_level`` (from ``--debug``) wins over ``logging.level`` in local.yml.
    Returns the ``routerbackup`` logger.
    """

    local_cfg = load_local_config(config_path)
    section: Mapping[str, Any] = {}
    if local_cfg and isinstance(local_cfg.get("logging"), Mapping):
        section = local_cfg["logging"]

    level = cli_level if cli_level is not None else _level(section.get("level"))
    wanted = Path(str(section["directory"])).expanduser() if section.get("directory") else LOG_DIRECTORY
    directory = next((path for path in (wanted, LOG_FALLBACK_DIRECTORY) if _writable(path)), None)
    if directory is None:
        raise OSError("Unable to create a writable logging directory.")
    log_file = directory / str(section.get("filename") or LOG_FILENAME)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in _handlers(log_file):
        root.addHandler(handler)
    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger("routerbackup")
    logger.setLevel(level)
    if local_cfg is None:
        logger.info("no local config at %s, logging with defaults level=%s", config_path, logging.getLevelName(level))
    if directory != wanted:
        logger.warning("log directory %s is not writable, using %s", wanted, directory)
    logger.info("logging to %s", log_file)
    return logger
