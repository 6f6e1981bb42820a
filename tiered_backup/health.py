"""
Backup health tracking across scheduler ticks.

Records the outcome of every run and derives a status from the number of
consecutive failed ticks. Persisted at ``<backup_root>/_meta/backup_health.json``.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .snapshot import write_json_atomic

logger = logging.getLogger(__name__)


# Health status thresholds
CONSECUTIVE_FAILURES_DEGRADED = 3
CONSECUTIVE_FAILURES_DOWN = 7

HEALTH_FILENAME = "backup_health.json"


@dataclass
class BackupHealth:
    """Outcome history of the backup runner."""
    consecutive_failures: int = 0
    last_success_at: Optional[str] = None
    last_failure_at: Optional[str] = None
    last_error: Optional[str] = None
    last_tick_at: Optional[str] = None
    last_tiers: List[str] = field(default_factory=list)
    last_summary_date: Optional[str] = None  # local date of the last daily summary sent
    status: str = "OK"  # OK, DEGRADED, DOWN

    def update_status(self):
        if self.consecutive_failures >= CONSECUTIVE_FAILURES_DOWN:
            self.status = "DOWN"
        elif self.consecutive_failures >= CONSECUTIVE_FAILURES_DEGRADED:
            self.status = "DEGRADED"
        else:
            self.status = "OK"

    def record_success(self, tiers: List[str], timestamp: Optional[datetime] = None):
        """Record a run that wrote ``tiers``."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        self.last_tick_at = timestamp.isoformat()
        self.last_success_at = timestamp.isoformat()
        self.last_tiers = list(tiers)
        self.consecutive_failures = 0
        self.last_error = None
        self.update_status()

    def record_failure(self, error: str, timestamp: Optional[datetime] = None):
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        self.last_tick_at = timestamp.isoformat()
        self.last_failure_at = timestamp.isoformat()
        self.consecutive_failures += 1
        self.last_error = error
        self.last_tiers = []
        self.update_status()

    def record_skip(self, timestamp: Optional[datetime] = None):
        """Outside-window tick: counts as a tick, leaves failure streak untouched."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        self.last_tick_at = timestamp.isoformat()
        self.last_tiers = []

    def record_summary(self, day: date):
        self.last_summary_date = day.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupHealth":
        health = cls(
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            last_success_at=data.get("last_success_at"),
            last_failure_at=data.get("last_failure_at"),
            last_error=data.get("last_error"),
            last_tick_at=data.get("last_tick_at"),
            last_tiers=list(data.get("last_tiers", [])),
            last_summary_date=data.get("last_summary_date"),
        )
        health.update_status()
        return health


def get_health_file_path(meta_dir: Path) -> Path:
    return Path(meta_dir) / HEALTH_FILENAME


def load_health(meta_dir: Path) -> BackupHealth:
    """Load health from disk, or start fresh if absent or unreadable."""
    health_path = get_health_file_path(meta_dir)

    if health_path.exists():
        try:
            with open(health_path, "r") as f:
                data = json.load(f)
            return BackupHealth.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not load backup health: {e}")
            return BackupHealth()

    return BackupHealth()


def save_health(health: BackupHealth, meta_dir: Path):
    write_json_atomic(get_health_file_path(meta_dir), health.to_dict())
