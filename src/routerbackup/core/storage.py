"""Crash-safe JSON documents shared by concurrent callers.

Each document owns a strict FIFO write queue: every write, and every
read-modify-write submitted through :meth:`JsonDocument.update`, waits for all
previously queued writers. Writes go to a ``.tmp`` sibling which then replaces
the target with :func:`os.replace`, so readers observe either the previous or
the new document and never a torn one.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from routerbackup.core.errors import StorageCorruptionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WriteQueue:
    """Ticket-based FIFO lock: slots are granted in the order they were requested."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    @contextmanager
    def slot(self) -> Iterator[None]:
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._serving != ticket:
                self._condition.wait()
        try:
            yield
        finally:
            with self._condition:
                self._serving += 1
                self._condition.notify_all()


def ensure_directory(path: Path) -> Path:
    """Ensure the target directory exists and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_json(path: Path, value: Any) -> None:
    """Write ``value`` as JSON through a temporary sibling and an atomic rename."""

    ensure_directory(path.parent)
    temp_path = path.with_name(f"{path.name}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(value, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any:
    """Parse ``path`` or raise :class:`StorageCorruptionError`."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise StorageCorruptionError(f"Malformed JSON document: {path}") from exc


class JsonDocument:
    """A single JSON document with self-healing reads and queued writes."""

    def __init__(
        self,
        path: Path,
        default_factory: Callable[[], Any],
        validator: Callable[[Any], bool] | None = None,
    ) -> None:
        self.path = Path(path)
        self._default_factory = default_factory
        self._validator = validator
        self._queue = WriteQueue()

    def read(self) -> Any:
        """Return the current document, recreating it when missing or malformed.

        The default is written from inside the write queue and only when the
        document is still unusable there, so a reset never discards an earlier
        queued write.
        """

        try:
            return self._load()
        except FileNotFoundError:
            logger.debug("document missing, creating path=%s", self.path)
            return self._reset()
        except StorageCorruptionError as exc:
            logger.warning("document corrupted, resetting path=%s reason=\"%s\"", self.path, exc)
            return self._reset()

    def write(self, value: Any) -> None:
        """Replace the whole document."""

        with self._queue.slot():
            atomic_write_json(self.path, value)

    def update(self, mutate: Callable[[Any], tuple[Any, T]]) -> T:
        """Run a read-modify-write cycle while holding a place in the write queue.

        ``mutate`` receives the current document and returns ``(new_document,
        result)``. A ``None`` document skips the write. Exceptions raised by
        ``mutate`` propagate and leave the stored document untouched.
        """

        with self._queue.slot():
            try:
                current = self._load()
            except (FileNotFoundError, StorageCorruptionError) as exc:
                logger.warning("document unreadable inside update, using default path=%s reason=\"%s\"", self.path, exc)
                current = self._default_factory()
            new_document, result = mutate(current)
            if new_document is not None:
                atomic_write_json(self.path, new_document)
            return result

    def _load(self) -> Any:
        data = read_json(self.path)
        if self._validator is not None and not self._validator(data):
            raise StorageCorruptionError(f"Unexpected document structure: {self.path}")
        return data

    def _reset(self) -> Any:
        # queued writers may have repaired the document while we waited
        with self._queue.slot():
            try:
                return self._load()
            except (FileNotFoundError, StorageCorruptionError):
                default = self._default_factory()
                atomic_write_json(self.path, default)
                return default
