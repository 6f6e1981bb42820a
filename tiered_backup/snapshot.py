"""
Snapshot building, naming and atomic persistence.

A snapshot is a single self-describing JSON document:

    {
      "timestamp": "2024-06-10T08:00:00+00:00",
      "schemaVersion": "2.0",
      "tier": "Father",
      "counts": {"items": 147, ...},
      "datasets": {"items": [...], ...}
    }

Files are written to a hidden temp file in the target directory and moved
into place with ``os.replace`` so readers never observe a partial snapshot.
"""

import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from .tiers import Tier


SCHEMA_VERSION = "2.0"
MANUAL_TIER = "Manual"
TEMP_SUFFIX = ".tmp"

# Required top-level snapshot fields, in file order
SNAPSHOT_FIELDS = ["timestamp", "schemaVersion", "tier", "counts", "datasets"]

# Filename conventions per tier. Group "date" is the local capture date.
FILENAME_PATTERNS = {
    Tier.SON.value: re.compile(r"^(?P<date>\d{4}-\d{2}-\d{2})-(?P<hour>\d{2})00\.json$"),
    Tier.FATHER.value: re.compile(r"^(?P<date>\d{4}-\d{2}-\d{2})\.json$"),
    Tier.GRANDFATHER.value: re.compile(r"^(?P<date>\d{4}-\d{2}-\d{2})-week(?P<week>\d{2})\.json$"),
    MANUAL_TIER: re.compile(
        r"^backup-(?P<kind>[a-z0-9_]+)-(?P<date>\d{4}-\d{2}-\d{2})T(?P<hour>\d{2})-(?P<minute>\d{2})-(?P<second>\d{2})\.json$"
    ),
}


class SnapshotWriteError(Exception):
    """Raised when a snapshot cannot be persisted."""
    pass


class StructurallyInvalid(Exception):
    """Raised when a snapshot file cannot be parsed into a snapshot document."""
    pass


def tier_label(tier: Union[Tier, str]) -> str:
    return tier.value if isinstance(tier, Tier) else str(tier)


@dataclass(frozen=True)
class Snapshot:
    """One immutable capture of every registered dataset."""
    timestamp: str
    tier: str
    schema_version: str
    counts: Dict[str, int]
    datasets: Dict[str, Tuple[Dict[str, Any], ...]] = field(repr=False)

    @property
    def total_records(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "schemaVersion": self.schema_version,
            "tier": self.tier,
            "counts": dict(self.counts),
            "datasets": {name: list(records) for name, records in self.datasets.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False, default=str)


def utc_timestamp(now: datetime) -> str:
    """ISO-8601 UTC rendering of ``now``; naive values are taken as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat()


def build_snapshot(
    tier: Union[Tier, str],
    datasets: Mapping[str, Sequence[Dict[str, Any]]],
    now: datetime,
    schema_version: str = SCHEMA_VERSION,
) -> Snapshot:
    """
    Assemble a snapshot from fetched datasets.

    Counts are always derived from the records themselves.

    Args:
        tier: Tier (or the manual label) the snapshot belongs to
        datasets: Dataset name -> ordered records
        now: Capture instant
        schema_version: Payload shape version

    Returns:
        Snapshot
    """
    frozen = {name: tuple(records) for name, records in datasets.items()}
    return Snapshot(
        timestamp=utc_timestamp(now),
        tier=tier_label(tier),
        schema_version=schema_version,
        counts={name: len(records) for name, records in frozen.items()},
        datasets=frozen,
    )


def snapshot_filename(tier: Union[Tier, str], local_now: datetime) -> str:
    """
    Deterministic filename for a tier's capture bucket.

    Son: one file per hour (``2024-06-10-0900.json``)
    Father: one file per day (``2024-06-10.json``)
    Grandfather: one file per ISO week (``2024-06-09-week23.json``)
    Manual: one file per second (``backup-full-2024-06-10T09-15-02.json``)
    """
    label = tier_label(tier)
    date_str = local_now.strftime("%Y-%m-%d")
    if label == Tier.SON.value:
        return f"{date_str}-{local_now.hour:02d}00.json"
    if label == Tier.FATHER.value:
        return f"{date_str}.json"
    if label == Tier.GRANDFATHER.value:
        week = local_now.isocalendar()[1]
        return f"{date_str}-week{week:02d}.json"
    if label == MANUAL_TIER:
        return f"backup-full-{local_now.strftime('%Y-%m-%dT%H-%M-%S')}.json"
    raise ValueError(f"Unknown tier: {label}")


def matches_tier(tier: Union[Tier, str], filename: str) -> bool:
    """True if ``filename`` follows the naming convention of ``tier``."""
    pattern = FILENAME_PATTERNS.get(tier_label(tier))
    return bool(pattern and pattern.match(filename))


def parse_capture_time(tier: Union[Tier, str], filename: str, tz: ZoneInfo) -> Optional[datetime]:
    """
    Recover the capture bucket start encoded in a snapshot filename.

    Returns:
        Aware datetime in ``tz``, or None if the name does not parse
    """
    pattern = FILENAME_PATTERNS.get(tier_label(tier))
    match = pattern.match(filename) if pattern else None
    if not match:
        return None

    parts = match.groupdict()
    try:
        captured = datetime.strptime(parts["date"], "%Y-%m-%d")
        captured = captured.replace(
            hour=int(parts.get("hour") or 0),
            minute=int(parts.get("minute") or 0),
            second=int(parts.get("second") or 0),
        )
    except ValueError:
        return None
    return captured.replace(tzinfo=tz)


def write_bytes_atomic(path: Path, content: bytes) -> int:
    """
    Write ``content`` to ``path`` via a unique temp file and ``os.replace``.

    Returns:
        Number of bytes written

    Raises:
        OSError: On any filesystem failure (the temp file is removed)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=TEMP_SUFFIX)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise
    return len(content)


def write_json_atomic(path: Path, data: Any) -> int:
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str).encode("utf-8")
    return write_bytes_atomic(path, content)


def write_snapshot(snapshot: Snapshot, directory: Path, filename: str) -> Tuple[Path, int]:
    """
    Persist a snapshot atomically.

    Args:
        snapshot: Snapshot to write
        directory: Tier directory
        filename: Name from snapshot_filename()

    Returns:
        Tuple of (path, size_bytes)

    Raises:
        SnapshotWriteError: If the snapshot cannot be written
    """
    path = Path(directory) / filename
    try:
        size = write_bytes_atomic(path, snapshot.to_json().encode("utf-8"))
    except OSError as e:
        raise SnapshotWriteError(f"Failed to write {path}: {e}")
    return path, size


def load_snapshot_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a snapshot document.

    Raises:
        FileNotFoundError: If the file does not exist
        StructurallyInvalid: If the content is not a JSON object
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise
    except json.JSONDecodeError as e:
        raise StructurallyInvalid(f"Invalid JSON in {path}: {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise StructurallyInvalid(f"Unreadable snapshot {path}: {e}")

    if not isinstance(data, dict):
        raise StructurallyInvalid(f"Snapshot root must be an object, got {type(data).__name__}")
    return data
