"""
One scheduler tick of the backup engine.

    1. Decide which tiers are due (nothing outside the window)
    2. Fetch every registered dataset once, concurrently, all-or-nothing
    3. Build and write one snapshot per due tier from that single capture
    4. Enforce retention for each tier written
    5. Notify, record health, and send the daily summary when it is due

Intended to be invoked hourly by cron (see scripts/run_backup.py).
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .health import load_health, save_health
from .notify import (
    BackupFailed,
    BackupSucceeded,
    CompositeNotifier,
    current_policy,
    NotificationPolicy,
    send_daily_summary,
)
from .registry import DatasetRegistry
from .retention import RetentionEnforcer
from .scheduler import due_tiers, to_local
from .snapshot import build_snapshot, snapshot_filename, SnapshotWriteError, utc_timestamp, write_snapshot
from .source import SourceAdapter, SourceUnavailable

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class BackupRunResult:
    """Outcome of one tick."""
    status: str
    now: str
    tiers: List[str] = field(default_factory=list)
    files: Dict[str, str] = field(default_factory=dict)
    file_sizes: Dict[str, int] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)
    deleted: Dict[str, List[str]] = field(default_factory=dict)
    retention_errors: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED.value

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def fetch_all_datasets(
    source: SourceAdapter,
    registry: DatasetRegistry,
    max_workers: int = 3,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Fetch every registered dataset exactly once.

    All fetches complete (or fail) before this returns, so no snapshot is ever
    built from a partial capture.

    Returns:
        Dataset name -> records, in registry order

    Raises:
        SourceUnavailable: If any dataset could not be fetched
    """
    results: Dict[str, List[Dict[str, Any]]] = {}
    failures: List[SourceUnavailable] = []

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_name = {
            executor.submit(source.fetch_dataset, name): name
            for name in registry.names
        }

        for future in as_completed(future_to_name):
            name = future_to_name[future]
            try:
                results[name] = list(future.result())
                logger.info(f"Fetched {len(results[name])} records from {name}")
            except SourceUnavailable as e:
                logger.error(f"Fetch failed for '{name}': {e}")
                failures.append(e)

    if failures:
        raise failures[0]

    return {name: results[name] for name in registry.names}


class BackupRunner:
    """
    Runs one backup tick.

    Args:
        config: BackupConfig
        source: Store to capture
        notifier: Output channels (None disables notifications)
        policy: Fixed NotificationPolicy; derived from the policy record each run if None
        retention: RetentionEnforcer (default built from config)
    """

    def __init__(
        self,
        config,
        source: SourceAdapter,
        notifier: Optional[CompositeNotifier] = None,
        policy: Optional[NotificationPolicy] = None,
        retention: Optional[RetentionEnforcer] = None,
    ):
        self.config = config
        self.source = source
        self.notifier = notifier
        self.policy = policy
        self.retention = retention or RetentionEnforcer(config)

    def run(self, now: Optional[datetime] = None) -> BackupRunResult:
        if now is None:
            now = datetime.now(timezone.utc)
        local_now = to_local(now, self.config.tz)
        now_utc = local_now.astimezone(timezone.utc)
        timestamp = utc_timestamp(now_utc)
        policy = self.policy or current_policy(self.config, now_utc)

        tiers = due_tiers(local_now, self.config)
        if not tiers:
            logger.info(
                f"Outside backup window ({local_now.strftime('%H:%M')} {self.config.timezone}); "
                f"window starts at {self.config.window_start_hour:02d}:00"
            )
            self._update_health(lambda h: h.record_skip(now_utc))
            self._emit(BackupSucceeded(tiers=[], timestamp=timestamp), policy)
            self._maybe_send_summary(local_now, policy)
            return BackupRunResult(status=RunStatus.SKIPPED.value, now=timestamp)

        logger.info(f"Backup due for: {', '.join(t.value for t in tiers)}")
        result = BackupRunResult(status=RunStatus.SUCCESS.value, now=timestamp)

        try:
            self._capture_and_write(tiers, local_now, now_utc, result)
        except (SourceUnavailable, SnapshotWriteError) as e:
            return self.fail(str(e), now_utc, policy, result)
        except Exception as e:
            logger.exception(f"Unexpected error during backup: {e}")
            return self.fail(f"Unexpected error: {e}", now_utc, policy, result)

        for tier in tiers:
            self._enforce_retention(tier, now_utc, result)

        self._emit(
            BackupSucceeded(
                tiers=list(result.tiers),
                counts=dict(result.counts),
                size_bytes=dict(result.file_sizes),
                files=dict(result.files),
                timestamp=timestamp,
            ),
            policy,
        )
        self._update_health(lambda h: h.record_success(result.tiers, now_utc))
        self._maybe_send_summary(local_now, policy)

        logger.info(f"Backup complete: {len(result.tiers)} snapshot(s), {sum(result.counts.values())} records")
        return result

    def fail(
        self,
        message: str,
        now: Optional[datetime] = None,
        policy: Optional[NotificationPolicy] = None,
        result: Optional[BackupRunResult] = None,
    ) -> BackupRunResult:
        """Report a failed tick through health and the notifier."""
        now = now or datetime.now(timezone.utc)
        timestamp = utc_timestamp(now)
        policy = policy or self.policy or current_policy(self.config, now)

        logger.error(f"Backup failed: {message}")
        if result is None:
            result = BackupRunResult(status=RunStatus.FAILED.value, now=timestamp)
        result.status = RunStatus.FAILED.value
        result.error = message

        self._emit(BackupFailed(message=message, timestamp=timestamp), policy)
        self._update_health(lambda h: h.record_failure(message, now))
        return result

    def _capture_and_write(self, tiers, local_now: datetime, now_utc: datetime, result: BackupRunResult):
        """Fetch once, then write one snapshot per due tier from that capture."""
        capture = fetch_all_datasets(self.source, self.config.registry, self.config.source.max_workers)

        for tier in tiers:
            snapshot = build_snapshot(tier, capture, now_utc, self.config.schema_version)
            filename = snapshot_filename(tier, local_now)
            path, size = write_snapshot(snapshot, self.config.tier_dir(tier), filename)

            result.tiers.append(tier.value)
            result.files[tier.value] = str(path)
            result.file_sizes[tier.value] = size
            result.counts = dict(snapshot.counts)
            logger.info(f"{tier.value} backup created: {filename} ({size / 1024:.2f} KB)")

    def _enforce_retention(self, tier, now: datetime, result: BackupRunResult):
        try:
            report = self.retention.enforce(tier, now=now)
        except OSError as e:
            logger.warning(f"Retention skipped for {tier.value}: {e}")
            result.retention_errors.append(f"{tier.value}: {e}")
            return

        result.deleted[tier.value] = [str(p) for p in report.deleted]
        result.retention_errors.extend(str(e) for e in report.errors)
        if report.deleted:
            logger.info(f"Cleaned up {len(report.deleted)} old {tier.value} backup(s)")

    def _emit(self, event, policy: NotificationPolicy):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event, policy)
        except Exception as e:
            logger.error(f"Notification failed for {type(event).__name__}: {e}")

    def _update_health(self, update):
        try:
            health = load_health(self.config.meta_dir)
            update(health)
            save_health(health, self.config.meta_dir)
        except OSError as e:
            logger.warning(f"Could not update backup health: {e}")

    def _maybe_send_summary(self, local_now: datetime, policy: NotificationPolicy):
        if self.notifier is None or not policy.is_summary_due(local_now):
            return
        day = local_now.date()
        try:
            if load_health(self.config.meta_dir).last_summary_date == day.isoformat():
                logger.info(f"Daily summary for {day} already sent")
                return
            results = send_daily_summary(self.config, self.notifier, policy, day)
        except Exception as e:
            logger.error(f"Daily summary failed: {e}")
            return
        if any(results.values()):
            self._update_health(lambda h: h.record_summary(day))
