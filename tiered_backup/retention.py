"""
Per-tier retention enforcement.

Only files that follow a tier's own naming convention are candidates for
deletion. Hidden temp files left by an interrupted write, foreign files and
other tiers' snapshots are never touched.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .snapshot import matches_tier, parse_capture_time, tier_label
from .tiers import Tier

logger = logging.getLogger(__name__)


class RetentionIOError(Exception):
    """Raised (and collected) when a single expired file cannot be removed."""
    def __init__(self, path: Path, original_error: OSError):
        self.path = path
        self.original_error = original_error
        super().__init__(f"{path}: {original_error}")


@dataclass
class RetentionReport:
    tier: str
    deleted: List[Path] = field(default_factory=list)
    kept: List[Path] = field(default_factory=list)
    errors: List[RetentionIOError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "deleted": [str(p) for p in self.deleted],
            "kept": [str(p) for p in self.kept],
            "errors": [str(e) for e in self.errors],
        }


def _utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class RetentionEnforcer:
    """
    Deletes snapshots older than their tier's retention window.

    Args:
        config: BackupConfig
        age_source: "mtime" (default) or "filename"; defaults to config.age_source
    """

    def __init__(self, config, age_source: Optional[str] = None):
        self.config = config
        self.age_source = age_source or config.age_source

    def file_age(self, tier: Union[Tier, str], path: Path, now: datetime) -> timedelta:
        captured = None
        if self.age_source == "filename":
            captured = parse_capture_time(tier, path.name, self.config.tz)
        if captured is None:
            captured = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return now - captured

    def enforce(self, tier: Tier, now: Optional[datetime] = None) -> RetentionReport:
        tier_config = self.config.tier_config(tier)
        return self.prune(tier, self.config.tier_dir(tier), tier_config.retention_days, now=now)

    def prune(
        self,
        tier: Union[Tier, str],
        directory: Path,
        retention_days: int,
        now: Optional[datetime] = None,
        keep: Optional[List[str]] = None,
    ) -> RetentionReport:
        """
        Delete matching files in ``directory`` older than ``retention_days``.

        Args:
            tier: Tier whose filename convention selects candidates
            directory: Directory to scan (missing is treated as empty)
            retention_days: Files strictly older than this are deleted
            now: Reference time (default: now)
            keep: File names never deleted

        Returns:
            RetentionReport
        """
        report = RetentionReport(tier=tier_label(tier))
        now = _utc(now)
        window = timedelta(days=retention_days)
        protected = set(keep or [])

        directory = Path(directory)
        if not directory.is_dir():
            return report

        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.name in protected or not matches_tier(tier, path.name):
                continue
            try:
                age = self.file_age(tier, path, now)
                if age > window:
                    os.remove(path)
                    report.deleted.append(path)
                    logger.info(f"Deleted old {report.tier} backup: {path.name}")
                else:
                    report.kept.append(path)
            except FileNotFoundError:
                # Removed concurrently by another run
                continue
            except OSError as e:
                error = RetentionIOError(path, e)
                report.errors.append(error)
                logger.warning(f"Retention failed for {path}: {e}")

        return report
