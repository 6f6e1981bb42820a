"""
Configuration loading for the backup engine.

Static settings come from ``config/backup.yaml`` (or the file named by
``BACKUP_CONFIG``); secrets come from the environment, optionally populated
from a ``.env`` file.

Usage:
    from tiered_backup.config import load_backup_config

    config = load_backup_config()
    config.tier_dir(Tier.SON)
"""

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

from .registry import DatasetRegistry
from .tiers import DEFAULT_TIER_CONFIGS, Tier, TierConfig

logger = logging.getLogger(__name__)


CONFIG_ENV_VAR = "BACKUP_CONFIG"
DEFAULT_CONFIG_PATHS = [
    "config/backup.yaml",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "config/backup.yaml"),
]

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
AGE_SOURCES = ("mtime", "filename")

DEFAULT_CONFIG: Dict[str, Any] = {
    "backup_root": "backups",
    "timezone": "Europe/London",
    "window_start_hour": 9,
    "weekly_marker_day": "sunday",
    "schema_version": "2.0",
    "tiers": {
        tier.name.lower(): {"directory": cfg.directory, "retention_days": cfg.retention_days}
        for tier, cfg in DEFAULT_TIER_CONFIGS.items()
    },
    "datasets": [],
    "source": {
        "max_workers": 3,
        "timeout_seconds": 30,
        "page_size": 1000,
    },
    "retention": {
        "age_source": "mtime",
    },
    "notifications": {
        "policy_file": None,
        "daily_summary_time": "18:00",
        "intensive_hours": 24,
        "email": {
            "enabled": False,
            "smtp_host": "smtp.gmail.com",
            "smtp_port": 587,
            "use_tls": True,
            "from": None,
            "to": [],
        },
        "teams": {
            "enabled": False,
        },
    },
    "manual": {
        "directory": "manual",
        "retention_days": 30,
        "data_only_dataset": "items",
    },
}


class ConfigError(Exception):
    """Raised when the backup configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class SourceSettings:
    max_workers: int = 3
    timeout_seconds: float = 30
    page_size: int = 1000


@dataclass(frozen=True)
class EmailSettings:
    enabled: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True
    sender: Optional[str] = None
    recipients: Tuple[str, ...] = ()
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class TeamsSettings:
    enabled: bool = False
    webhook_url: Optional[str] = None


@dataclass(frozen=True)
class NotificationSettings:
    policy_file: Path = Path("backups/_meta/notification_policy.json")
    daily_summary_time: str = "18:00"
    intensive_hours: int = 24
    email: EmailSettings = field(default_factory=EmailSettings)
    teams: TeamsSettings = field(default_factory=TeamsSettings)

    @property
    def daily_summary_hour(self) -> int:
        return int(self.daily_summary_time.split(":")[0])


@dataclass(frozen=True)
class ManualSettings:
    directory: str = "manual"
    retention_days: int = 30
    data_only_dataset: Optional[str] = "items"


@dataclass(frozen=True)
class BackupConfig:
    """Process-wide, read-only backup configuration."""
    backup_root: Path
    timezone: str
    window_start_hour: int
    weekly_marker_day: int  # 0 = Monday ... 6 = Sunday
    schema_version: str
    tiers: Dict[Tier, TierConfig]
    registry: DatasetRegistry
    source: SourceSettings = field(default_factory=SourceSettings)
    age_source: str = "mtime"
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    manual: ManualSettings = field(default_factory=ManualSettings)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def meta_dir(self) -> Path:
        return self.backup_root / "_meta"

    @property
    def manual_dir(self) -> Path:
        return self.backup_root / self.manual.directory

    def tier_config(self, tier: Tier) -> TierConfig:
        return self.tiers[tier]

    def tier_dir(self, tier: Tier) -> Path:
        return self.backup_root / self.tiers[tier].directory


def load_environment(env_file: Optional[str] = None) -> None:
    """Populate os.environ from a .env file (existing variables win)."""
    if env_file:
        load_dotenv(env_file)
        return
    for candidate in (".env", ".env.local"):
        if os.path.exists(candidate):
            load_dotenv(candidate)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_file(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load raw YAML configuration.

    Args:
        path: Explicit config path. Falls back to $BACKUP_CONFIG, then the
            default locations. A missing default file yields an empty dict.

    Returns:
        Parsed config dict (possibly empty)

    Raises:
        ConfigError: If an explicitly requested file is missing or unparsable
    """
    explicit = path or os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        if not os.path.exists(explicit):
            raise ConfigError(f"Config file not found: {explicit}")
        candidates = [explicit]
    else:
        candidates = DEFAULT_CONFIG_PATHS

    for candidate in candidates:
        if os.path.exists(candidate):
            try:
                with open(candidate, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {candidate}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Config root must be a mapping: {candidate}")
            logger.debug(f"Loaded backup config from {candidate}")
            return data

    return {}


def _parse_weekday(value: Any) -> int:
    if isinstance(value, int) and 0 <= value <= 6:
        return value
    if isinstance(value, str) and value.strip().lower() in WEEKDAYS:
        return WEEKDAYS.index(value.strip().lower())
    raise ConfigError(f"Invalid weekly_marker_day: {value!r}")


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _number(value: Any, key: str, kind=int):
    """Convert a config value, naming the offending key on failure."""
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}")


def build_config(raw: Dict[str, Any]) -> BackupConfig:
    """Turn a raw config mapping (merged over defaults) into a BackupConfig."""
    data = _deep_merge(DEFAULT_CONFIG, raw)

    backup_root = Path(os.environ.get("BACKUP_ROOT") or data["backup_root"])

    tiers: Dict[Tier, TierConfig] = {}
    for key, entry in data["tiers"].items():
        try:
            tier = Tier.parse(key)
        except ValueError as e:
            raise ConfigError(str(e))
        if not isinstance(entry, dict):
            raise ConfigError(f"tiers.{key} must be a mapping")
        tiers[tier] = TierConfig(
            name=tier,
            directory=str(entry.get("directory", DEFAULT_TIER_CONFIGS[tier].directory)),
            retention_days=_number(
                entry.get("retention_days", DEFAULT_TIER_CONFIGS[tier].retention_days),
                f"tiers.{key}.retention_days",
            ),
        )
    for tier, default in DEFAULT_TIER_CONFIGS.items():
        tiers.setdefault(tier, default)

    try:
        registry = DatasetRegistry.from_config(data.get("datasets"))
    except (KeyError, ValueError) as e:
        raise ConfigError(f"Invalid datasets section: {e}")

    src = data["source"]
    source = SourceSettings(
        max_workers=_number(src["max_workers"], "source.max_workers"),
        timeout_seconds=_number(src["timeout_seconds"], "source.timeout_seconds", float),
        page_size=_number(src["page_size"], "source.page_size"),
    )

    notif = data["notifications"]
    email = notif["email"]
    recipients = tuple(email.get("to") or ()) or _env_list("BACKUP_EMAIL_TO")
    notifications = NotificationSettings(
        policy_file=Path(notif["policy_file"]) if notif.get("policy_file")
        else backup_root / "_meta" / "notification_policy.json",
        daily_summary_time=str(notif["daily_summary_time"]),
        intensive_hours=_number(notif["intensive_hours"], "notifications.intensive_hours"),
        email=EmailSettings(
            enabled=bool(email["enabled"]),
            smtp_host=str(email["smtp_host"]),
            smtp_port=_number(email["smtp_port"], "notifications.email.smtp_port"),
            use_tls=bool(email["use_tls"]),
            sender=email.get("from") or os.environ.get("BACKUP_EMAIL_FROM") or os.environ.get("BACKUP_EMAIL_USER"),
            recipients=recipients,
            username=os.environ.get("BACKUP_EMAIL_USER"),
            password=os.environ.get("BACKUP_EMAIL_PASSWORD"),
        ),
        teams=TeamsSettings(
            enabled=bool(notif["teams"]["enabled"]),
            webhook_url=os.environ.get("BACKUP_TEAMS_WEBHOOK_URL"),
        ),
    )

    manual_raw = data["manual"]
    manual = ManualSettings(
        directory=str(manual_raw["directory"]),
        retention_days=_number(manual_raw["retention_days"], "manual.retention_days"),
        data_only_dataset=manual_raw.get("data_only_dataset"),
    )

    return BackupConfig(
        backup_root=backup_root,
        timezone=str(data["timezone"]),
        window_start_hour=_number(data["window_start_hour"], "window_start_hour"),
        weekly_marker_day=_parse_weekday(data["weekly_marker_day"]),
        schema_version=str(data["schema_version"]),
        tiers=tiers,
        registry=registry,
        source=source,
        age_source=str(data["retention"]["age_source"]),
        notifications=notifications,
        manual=manual,
    )


def validate_config(config: BackupConfig) -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        issues.append(f"Unknown timezone: {config.timezone}")

    if not 0 <= config.window_start_hour <= 23:
        issues.append(f"window_start_hour must be in 0-23, got {config.window_start_hour}")

    directories = [t.directory for t in config.tiers.values()]
    if len(set(directories)) != len(directories):
        issues.append(f"Tier directories must be distinct: {directories}")
    if config.manual.directory in directories:
        issues.append(f"Manual directory collides with a tier directory: {config.manual.directory}")

    for tier_config in config.tiers.values():
        if tier_config.retention_days < 1:
            issues.append(f"{tier_config.name.value} retention_days must be >= 1")
    if config.manual.retention_days < 1:
        issues.append("manual retention_days must be >= 1")

    if len(config.registry) == 0:
        issues.append("At least one dataset must be registered")

    if config.manual.data_only_dataset and config.manual.data_only_dataset not in config.registry:
        issues.append(f"manual data_only_dataset is not registered: {config.manual.data_only_dataset}")

    if config.source.max_workers < 1:
        issues.append("source.max_workers must be >= 1")
    if config.source.page_size < 1:
        issues.append("source.page_size must be >= 1")

    if config.age_source not in AGE_SOURCES:
        issues.append(f"Invalid retention.age_source: {config.age_source} (expected one of {AGE_SOURCES})")

    if not re.fullmatch(r"([01]\d|2[0-3]):[0-5]\d", config.notifications.daily_summary_time):
        issues.append(f"Invalid daily_summary_time: {config.notifications.daily_summary_time}")

    return issues


def load_backup_config(path: Optional[str] = None) -> BackupConfig:
    """
    Load, build and validate the backup configuration.

    Raises:
        ConfigError: If the file is unreadable or validation finds issues
    """
    config = build_config(load_config_file(path))
    issues = validate_config(config)
    if issues:
        raise ConfigError("Invalid backup configuration: " + "; ".join(issues))
    return config
