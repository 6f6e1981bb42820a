"""
Backup notifications: events, delivery policy and output channels.

Events are plain dataclasses handed to a CompositeNotifier together with the
NotificationPolicy for the current run. The policy decides what is worth
sending; each channel (email, Microsoft Teams) decides how.

Policy record (``<backup_root>/_meta/notification_policy.json``):

    {
      "intensive_mode": true,
      "intensive_until": "2024-06-11T09:00:00+00:00",
      "daily_summary_time": "18:00",
      "enabled_at": "2024-06-10T09:00:00+00:00"
    }

The record is only written by explicit monitoring commands. Reading it never
changes it; an expired intensive window simply derives summary mode.
"""

import json
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

import requests

from .snapshot import FILENAME_PATTERNS, load_snapshot_file, StructurallyInvalid, write_json_atomic
from .tiers import Tier

logger = logging.getLogger(__name__)


INTENSIVE = "intensive"
SUMMARY = "summary"

DEFAULT_INTENSIVE_HOURS = 24
DEFAULT_DAILY_SUMMARY_TIME = "18:00"
SMTP_TIMEOUT = 30
WEBHOOK_TIMEOUT = 10

TIER_DESCRIPTIONS = {
    Tier.SON.value: "Hourly backup",
    Tier.FATHER.value: "Daily backup",
    Tier.GRANDFATHER.value: "Weekly backup",
}


class NotifyError(Exception):
    """Raised by a channel when a message cannot be delivered."""
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Events
# =============================================================================

@dataclass
class BackupSucceeded:
    """A run finished. ``tiers`` is empty for an outside-window tick."""
    tiers: List[str]
    counts: Dict[str, int] = field(default_factory=dict)
    size_bytes: Dict[str, int] = field(default_factory=dict)
    files: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    @property
    def total_records(self) -> int:
        return sum(self.counts.values())


@dataclass
class BackupFailed:
    message: str
    timestamp: str = field(default_factory=_now_iso)


@dataclass
class DailySummary:
    date: str
    snapshots: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(s.get("size_bytes", 0) for s in self.snapshots)


Event = Union[BackupSucceeded, BackupFailed, DailySummary]


# =============================================================================
# Policy
# =============================================================================

@dataclass
class PolicyRecord:
    """Persisted monitoring preference."""
    intensive_mode: bool = False
    intensive_until: Optional[str] = None
    daily_summary_time: str = DEFAULT_DAILY_SUMMARY_TIME
    enabled_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyRecord":
        return cls(
            intensive_mode=bool(data.get("intensive_mode", False)),
            intensive_until=data.get("intensive_until"),
            daily_summary_time=data.get("daily_summary_time") or DEFAULT_DAILY_SUMMARY_TIME,
            enabled_at=data.get("enabled_at"),
        )


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _summary_hour(daily_summary_time: str) -> int:
    try:
        return int(daily_summary_time.split(":")[0])
    except (ValueError, AttributeError):
        return int(DEFAULT_DAILY_SUMMARY_TIME.split(":")[0])


@dataclass(frozen=True)
class NotificationPolicy:
    """What to deliver this run. Derived, never stored."""
    mode: str = SUMMARY
    intensive_until: Optional[datetime] = None
    daily_summary_hour: int = 18

    @property
    def is_intensive(self) -> bool:
        return self.mode == INTENSIVE

    @classmethod
    def derive(
        cls,
        record: Optional[PolicyRecord],
        now: datetime,
        default_summary_time: str = DEFAULT_DAILY_SUMMARY_TIME,
    ) -> "NotificationPolicy":
        """
        Policy in force at ``now``.

        Intensive iff the record asks for it and ``now`` is before its expiry.
        A missing record means summary mode.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if record is None:
            return cls(mode=SUMMARY, daily_summary_hour=_summary_hour(default_summary_time))

        hour = _summary_hour(record.daily_summary_time or default_summary_time)
        until = _parse_instant(record.intensive_until)
        if record.intensive_mode and until is not None and now < until:
            return cls(mode=INTENSIVE, intensive_until=until, daily_summary_hour=hour)
        return cls(mode=SUMMARY, intensive_until=until, daily_summary_hour=hour)

    def should_deliver(self, event: Event) -> bool:
        if isinstance(event, BackupFailed):
            return True
        if isinstance(event, DailySummary):
            return True
        if isinstance(event, BackupSucceeded):
            if not event.tiers:
                return False
            if self.is_intensive:
                return True
            return any(t in (Tier.FATHER.value, Tier.GRANDFATHER.value) for t in event.tiers)
        return False

    def is_summary_due(self, local_now: datetime) -> bool:
        return not self.is_intensive and local_now.hour == self.daily_summary_hour


def load_policy_record(path: Path) -> Optional[PolicyRecord]:
    """Read the persisted policy record, or None if absent or unreadable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r") as f:
            data = json.load(f)
        return PolicyRecord.from_dict(data)
    except (json.JSONDecodeError, AttributeError, OSError) as e:
        logger.warning(f"Could not load notification policy from {path}: {e}")
        return None


def save_policy_record(path: Path, record: PolicyRecord):
    write_json_atomic(Path(path), record.to_dict())


def enable_intensive(
    path: Path,
    now: Optional[datetime] = None,
    hours: int = DEFAULT_INTENSIVE_HOURS,
    daily_summary_time: str = DEFAULT_DAILY_SUMMARY_TIME,
) -> PolicyRecord:
    """Switch to per-run notifications for the next ``hours`` hours."""
    now = now or datetime.now(timezone.utc)
    record = PolicyRecord(
        intensive_mode=True,
        intensive_until=(now + timedelta(hours=hours)).isoformat(),
        daily_summary_time=daily_summary_time,
        enabled_at=now.isoformat(),
    )
    save_policy_record(path, record)
    logger.info(f"Intensive monitoring enabled until {record.intensive_until}")
    return record


def disable_intensive(path: Path, daily_summary_time: str = DEFAULT_DAILY_SUMMARY_TIME) -> PolicyRecord:
    """Switch to daily summary mode, keeping the rest of the record."""
    record = load_policy_record(path) or PolicyRecord(daily_summary_time=daily_summary_time)
    record.intensive_mode = False
    save_policy_record(path, record)
    logger.info("Switched to daily summary mode")
    return record


# =============================================================================
# Rendering
# =============================================================================

def format_size(size_bytes: int) -> str:
    if size_bytes > 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.2f} MB"
    return f"{size_bytes / 1024:.2f} KB"


def _local(timestamp: str, tz: ZoneInfo) -> datetime:
    parsed = _parse_instant(timestamp) or datetime.now(timezone.utc)
    return parsed.astimezone(tz)


def render_message(event: Event, policy: NotificationPolicy, tz: ZoneInfo) -> Tuple[str, str]:
    """Subject and plain-text body for an event."""
    if isinstance(event, BackupSucceeded):
        local = _local(event.timestamp, tz)
        lines = [
            "Backup completed successfully",
            "",
            f"Time: {local.strftime('%Y-%m-%d %H:%M:%S %Z')}",
            f"Records backed up: {event.total_records}",
            "",
            "Snapshots:",
        ]
        for tier in event.tiers:
            size = event.size_bytes.get(tier, 0)
            lines.append(
                f"  {tier:<12} {TIER_DESCRIPTIONS.get(tier, 'Backup'):<14} "
                f"{format_size(size):>10}  {event.files.get(tier, '')}"
            )
        lines.append("")
        lines.append("Counts:")
        for name, count in event.counts.items():
            lines.append(f"  {name}: {count}")
        lines.append("")
        if policy.is_intensive and policy.intensive_until:
            lines.append(f"Intensive monitoring until {policy.intensive_until.astimezone(tz).strftime('%Y-%m-%d %H:%M')}.")
        else:
            lines.append("Daily summary mode active.")
        subject = f"Backup complete - {', '.join(event.tiers)} ({local.strftime('%H:%M:%S')})"
        return subject, "\n".join(lines)

    if isinstance(event, BackupFailed):
        local = _local(event.timestamp, tz)
        body = "\n".join([
            "Backup FAILED",
            "",
            f"Time: {local.strftime('%Y-%m-%d %H:%M:%S %Z')}",
            "",
            "Error:",
            event.message,
            "",
            "Check the backup system. Run a manual backup with: tiered-backup full",
        ])
        return f"Backup FAILED - {local.strftime('%H:%M:%S')}", body

    if isinstance(event, DailySummary):
        lines = [
            "Daily backup summary",
            "",
            f"Date: {event.date}",
            f"Total backups: {len(event.snapshots)}",
            f"Total data: {format_size(event.total_size)}",
            "",
            "Timeline:",
        ]
        for snap in event.snapshots:
            records = snap.get("total_records")
            records_str = f"{records} records" if records is not None else "unreadable"
            lines.append(f"  {snap.get('name', '?'):<24} {format_size(snap.get('size_bytes', 0)):>10}  {records_str}")
        if not event.snapshots:
            lines.append("  (no hourly snapshots)")
        return f"Daily backup summary - {event.date}", "\n".join(lines)

    raise TypeError(f"Unsupported event: {type(event).__name__}")


# =============================================================================
# Channels
# =============================================================================

class NotificationChannel(ABC):
    name = "channel"

    def __init__(self, tz: Optional[ZoneInfo] = None):
        self.tz = tz or ZoneInfo("UTC")

    @abstractmethod
    def configured(self) -> bool:
        pass

    @abstractmethod
    def deliver(self, subject: str, body: str, event: Event):
        """Send one message. Raises NotifyError on failure."""
        pass

    def send(self, event: Event, policy: NotificationPolicy) -> bool:
        if not self.configured():
            logger.warning(f"{self.name} notifications not configured; skipping")
            return False
        subject, body = render_message(event, policy, self.tz)
        self.deliver(subject, body, event)
        return True


class EmailNotifier(NotificationChannel):
    """SMTP email channel."""
    name = "email"

    def __init__(self, settings, tz: Optional[ZoneInfo] = None):
        super().__init__(tz)
        self.settings = settings

    def configured(self) -> bool:
        return bool(self.settings.sender and self.settings.recipients)

    def deliver(self, subject: str, body: str, event: Event):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.sender
        msg["To"] = ", ".join(self.settings.recipients)
        if isinstance(event, BackupFailed):
            msg["X-Priority"] = "1"
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=SMTP_TIMEOUT) as smtp:
                if self.settings.use_tls:
                    smtp.starttls()
                if self.settings.username and self.settings.password:
                    smtp.login(self.settings.username, self.settings.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotifyError(f"Email delivery failed: {e}")

        logger.info(f"Email notification sent to {msg['To']}")


class TeamsNotifier(NotificationChannel):
    """Microsoft Teams incoming-webhook channel."""
    name = "teams"

    def __init__(self, settings, tz: Optional[ZoneInfo] = None):
        super().__init__(tz)
        self.settings = settings

    def configured(self) -> bool:
        return bool(self.settings.webhook_url)

    def deliver(self, subject: str, body: str, event: Event):
        payload = {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "summary": subject,
            "themeColor": "D63333" if isinstance(event, BackupFailed) else "2EB886",
            "title": subject,
            # Teams collapses single newlines in card text
            "text": body.replace("\n", "  \n"),
        }
        try:
            response = requests.post(
                self.settings.webhook_url,
                json=payload,
                timeout=WEBHOOK_TIMEOUT,
                headers={"Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            raise NotifyError(f"Teams delivery failed: {e}")

        if response.status_code not in [200, 201, 202]:
            raise NotifyError(f"Teams webhook returned {response.status_code}: {response.text[:200]}")
        logger.info("Teams notification sent")


class CompositeNotifier:
    """Fans events out to every channel; channel failures are logged, not raised."""

    def __init__(self, channels: Optional[List[NotificationChannel]] = None):
        self.channels = list(channels or [])

    def notify(self, event: Event, policy: NotificationPolicy, force: bool = False) -> Dict[str, bool]:
        """
        Deliver ``event`` if the policy wants it (or ``force`` is set).

        Returns:
            Channel name -> delivered
        """
        if not force and not policy.should_deliver(event):
            logger.debug(f"Policy ({policy.mode}) suppressed {type(event).__name__}")
            return {}

        results = {}
        for channel in self.channels:
            try:
                results[channel.name] = channel.send(event, policy)
            except NotifyError as e:
                logger.error(f"Failed to send {channel.name} notification: {e}")
                results[channel.name] = False
        return results


def build_notifier(config) -> CompositeNotifier:
    """Channels enabled in the configuration."""
    settings = config.notifications
    channels: List[NotificationChannel] = []
    if settings.email.enabled:
        channels.append(EmailNotifier(settings.email, tz=config.tz))
    if settings.teams.enabled:
        channels.append(TeamsNotifier(settings.teams, tz=config.tz))
    if not channels:
        logger.debug("No notification channels enabled")
    return CompositeNotifier(channels)


def current_policy(config, now: Optional[datetime] = None) -> NotificationPolicy:
    now = now or datetime.now(timezone.utc)
    record = load_policy_record(config.notifications.policy_file)
    return NotificationPolicy.derive(record, now, config.notifications.daily_summary_time)


# =============================================================================
# Daily summary
# =============================================================================

def build_daily_summary(config, day: date) -> DailySummary:
    """Collect the hourly snapshots captured on ``day`` (local date)."""
    son_dir = config.tier_dir(Tier.SON)
    pattern = FILENAME_PATTERNS[Tier.SON.value]
    prefix = day.strftime("%Y-%m-%d")

    snapshots = []
    if son_dir.is_dir():
        for path in sorted(son_dir.iterdir()):
            match = pattern.match(path.name)
            if not match or match.group("date") != prefix:
                continue
            entry: Dict[str, Any] = {"name": path.name, "size_bytes": path.stat().st_size}
            try:
                data = load_snapshot_file(path)
                counts = data.get("counts") or {}
                entry["timestamp"] = data.get("timestamp")
                entry["counts"] = counts
                entry["total_records"] = sum(v for v in counts.values() if isinstance(v, int))
            except StructurallyInvalid as e:
                logger.warning(f"Skipping unreadable snapshot in summary: {e}")
                entry["total_records"] = None
            snapshots.append(entry)

    return DailySummary(date=prefix, snapshots=snapshots)


def send_daily_summary(
    config,
    notifier: CompositeNotifier,
    policy: NotificationPolicy,
    day: Optional[date] = None,
) -> Dict[str, bool]:
    if day is None:
        day = datetime.now(config.tz).date()
    summary = build_daily_summary(config, day)
    logger.info(f"Sending daily summary for {summary.date} ({len(summary.snapshots)} snapshots)")
    return notifier.notify(summary, policy)
