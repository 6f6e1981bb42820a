"""
On-demand full backups.

Writes into ``<backup_root>/manual/``:

    backup-full-<ts>.json     full snapshot (tier "Manual")
    backup-<dataset>-<ts>.json  plain JSON list of the primary dataset
    latest-full.json          copy of the newest full snapshot
    latest-<dataset>.json     copy of the newest data-only export

Timestamped files older than ``manual.retention_days`` are pruned; the
``latest-*`` copies never are.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .retention import RetentionEnforcer
from .runner import fetch_all_datasets
from .scheduler import to_local
from .snapshot import build_snapshot, MANUAL_TIER, snapshot_filename, SnapshotWriteError, write_json_atomic, write_snapshot
from .source import SourceAdapter

logger = logging.getLogger(__name__)


@dataclass
class ManualBackupResult:
    path: Path
    size_bytes: int
    counts: Dict[str, int]
    data_path: Optional[Path] = None
    deleted: List[Path] = field(default_factory=list)


def create_full_backup(config, source: SourceAdapter, now: Optional[datetime] = None) -> ManualBackupResult:
    """
    Capture every dataset into the manual backup directory.

    Raises:
        SourceUnavailable: If any dataset cannot be fetched (nothing is written)
        SnapshotWriteError: If a file cannot be written
    """
    if now is None:
        now = datetime.now(timezone.utc)
    local_now = to_local(now, config.tz)
    directory = config.manual_dir

    capture = fetch_all_datasets(source, config.registry, config.source.max_workers)
    snapshot = build_snapshot(MANUAL_TIER, capture, local_now, config.schema_version)

    filename = snapshot_filename(MANUAL_TIER, local_now)
    path, size = write_snapshot(snapshot, directory, filename)
    logger.info(f"Saved full backup: {path} ({size / 1024:.2f} KB)")

    result = ManualBackupResult(path=path, size_bytes=size, counts=dict(snapshot.counts))

    try:
        write_json_atomic(directory / "latest-full.json", snapshot.to_dict())

        dataset = config.manual.data_only_dataset
        if dataset and dataset in capture:
            stamp = local_now.strftime("%Y-%m-%dT%H-%M-%S")
            result.data_path = directory / f"backup-{dataset}-{stamp}.json"
            write_json_atomic(result.data_path, capture[dataset])
            write_json_atomic(directory / f"latest-{dataset}.json", capture[dataset])
            logger.info(f"Saved {dataset} export: {result.data_path}")
    except OSError as e:
        raise SnapshotWriteError(f"Failed to update manual backup files: {e}")

    report = RetentionEnforcer(config).prune(
        MANUAL_TIER,
        directory,
        config.manual.retention_days,
        now=local_now,
    )
    result.deleted = report.deleted
    if report.deleted:
        logger.info(f"Cleaned up {len(report.deleted)} manual backup(s) older than {config.manual.retention_days} days")
    for error in report.errors:
        logger.warning(f"Could not clean up manual backup: {error}")

    return result
