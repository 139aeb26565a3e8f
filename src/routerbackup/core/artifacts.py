"""Locate, name and delete backup artifacts on disk.

Layout under the backup root::

    <safe-name>/backup/<safe-name>_backup_<yyyyMMdd_HHmmss>.backup
    <safe-name>/export/<safe-name>_export_<yyyyMMdd_HHmmss>.rsc
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path

from routerbackup.core.models import ArtifactFile, ArtifactKind, ParsedArtifactName

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y%m%d_%H%M%S"

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9_-]")
_STAMP_PATTERN = re.compile(r"_(\d{8}_\d{6})\.")
_ARTIFACT_PATTERN = re.compile(r"^(?P<device>.+?)_(?P<kind>backup|export)_(?P<stamp>\d{8}_\d{6})\.(?P<ext>backup|rsc)$")


def safe_name(name: str | None) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with ``_``."""

    return _UNSAFE_CHARACTERS.sub("_", name or "") or "router"


def format_stamp(moment: datetime) -> str:
    return moment.strftime(STAMP_FORMAT)


def artifact_basename(safe_device: str, kind: ArtifactKind, stamp: str) -> str:
    """Name without extension, as used for the remote file."""

    return f"{safe_device}_{kind.value}_{stamp}"


def artifact_filename(safe_device: str, kind: ArtifactKind, stamp: str) -> str:
    return f"{artifact_basename(safe_device, kind, stamp)}.{kind.extension}"


def artifact_path(root: Path, safe_device: str, kind: ArtifactKind, stamp: str) -> Path:
    return Path(root) / safe_device / kind.directory / artifact_filename(safe_device, kind, stamp)


def parse_timestamp(filename: str) -> datetime | None:
    """Extract the ``_yyyyMMdd_HHmmss.`` component of a filename."""

    match = _STAMP_PATTERN.search(filename)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), STAMP_FORMAT)
    except ValueError:
        return None


def parse_artifact_name(filename: str) -> ParsedArtifactName | None:
    match = _ARTIFACT_PATTERN.match(filename)
    if not match:
        return None
    kind = ArtifactKind(match.group("kind"))
    if match.group("ext") != kind.extension:
        return None
    try:
        timestamp = datetime.strptime(match.group("stamp"), STAMP_FORMAT)
    except ValueError:
        return None
    return ParsedArtifactName(
        device=match.group("device"),
        kind=kind,
        stamp=match.group("stamp"),
        timestamp=timestamp,
    )


def _created_at(path: Path) -> datetime:
    stats = path.stat()
    created = getattr(stats, "st_birthtime", None) or stats.st_mtime
    return datetime.fromtimestamp(created)


def _scan_kind(device_dir: Path, safe_device: str, kind: ArtifactKind) -> list[ArtifactFile]:
    kind_dir = device_dir / kind.directory
    if not kind_dir.is_dir():
        return []

    files: list[ArtifactFile] = []
    for path in kind_dir.iterdir():
        if not path.is_file() or path.suffix != f".{kind.extension}":
            continue
        created_at = _created_at(path)
        files.append(
            ArtifactFile(
                device=safe_device,
                filename=path.name,
                path=path,
                kind=kind,
                size=path.stat().st_size,
                created_at=created_at,
                timestamp=parse_timestamp(path.name) or created_at,
            )
        )
    return files


def list_artifacts(root: Path, safe_device: str | None = None) -> list[ArtifactFile]:
    """Return artifacts newest first, optionally for one safe device name."""

    root = Path(root)
    if not root.is_dir():
        return []

    if safe_device is not None:
        device_dirs = [root / safe_device]
    else:
        device_dirs = sorted(path for path in root.iterdir() if path.is_dir())

    files: list[ArtifactFile] = []
    for device_dir in device_dirs:
        if not device_dir.is_dir():
            continue
        for kind in ArtifactKind:
            files.extend(_scan_kind(device_dir, device_dir.name, kind))

    files.sort(key=lambda item: item.timestamp, reverse=True)
    return files


def artifacts_for_device(root: Path, display_name: str, limit: int = 50) -> list[ArtifactFile]:
    """Artifacts of a registered device, labelled with its display name."""

    files = list_artifacts(root, safe_name(display_name))[:limit]
    for item in files:
        item.device = display_name
    return files


def delete_file(path: Path) -> Path:
    path = Path(path)
    path.unlink()
    logger.info("artifact deleted path=%s", path)
    return path


def delete_pair(path: Path) -> list[Path]:
    """Delete both files of the pair ``path`` belongs to.

    A filename without a parsable timestamp is deleted on its own.
    """

    path = Path(path)
    parsed = parse_artifact_name(path.name)
    if parsed is None:
        logger.debug("artifact name not parsable, deleting single file path=%s", path)
        if not path.exists():
            return []
        return [delete_file(path)]

    device_dir = path.parent.parent
    deleted: list[Path] = []
    for kind in ArtifactKind:
        sibling = device_dir / kind.directory / artifact_filename(parsed.device, kind, parsed.stamp)
        if sibling.is_file():
            deleted.append(delete_file(sibling))
    return deleted


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size / (1024 * 1024):.2f} MB"
