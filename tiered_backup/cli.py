"""
Command-line interface for the backup engine.

Entry points:
    run-backup [--now ISO] [--config PATH]
    verify-backup [PATH] [--no-live] [--json]
    tiered-backup {run,verify,full,status,summary,monitoring}

Exit codes: 0 on success (including an outside-window tick), 1 on failure.
"""

import argparse
import json
import logging
import sys
from datetime import date, datetime, timezone
from typing import Optional

from .config import ConfigError, load_backup_config, load_environment
from .health import load_health
from .inventory import latest_snapshot, tier_summary
from .logging_config import configure_logging
from .manual import create_full_backup
from .notify import (
    BackupSucceeded,
    build_notifier,
    current_policy,
    disable_intensive,
    enable_intensive,
    load_policy_record,
    NotificationPolicy,
    send_daily_summary,
)
from .runner import BackupRunner
from .snapshot import SnapshotWriteError
from .source import build_source, MissingCredentialsError, SourceUnavailable
from .verifier import format_report, verify_snapshot

logger = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace):
    return load_backup_config(getattr(args, "config", None))


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def cmd_run(args: argparse.Namespace) -> int:
    """Run one scheduler tick."""
    try:
        config = _load_config(args)
        now = _parse_now(args.now)
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    notifier = build_notifier(config)
    try:
        source = build_source(config)
    except MissingCredentialsError as e:
        BackupRunner(config, source=None, notifier=notifier).fail(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    runner = BackupRunner(config, source=source, notifier=notifier)
    try:
        result = runner.run(now)
    except Exception as e:
        logger.exception(f"Unexpected backup failure: {e}")
        return 1

    if result.status == "SKIPPED":
        print("Outside backup window; no snapshots due.")
    elif result.ok:
        for tier in result.tiers:
            print(f"{tier:<12} {result.files[tier]} ({result.file_sizes[tier] / 1024:.2f} KB)")
        print(f"Records: {', '.join(f'{k}={v}' for k, v in result.counts.items())}")
        if result.retention_errors:
            print(f"Retention warnings: {len(result.retention_errors)}")
    else:
        print(f"Error: {result.error}", file=sys.stderr)

    return result.exit_code


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a snapshot file (default: the newest one)."""
    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    path = args.path or latest_snapshot(config)
    if path is None:
        print(f"Error: No snapshots found under {config.backup_root}", file=sys.stderr)
        return 1

    source = None
    skipped_live = None
    if not args.no_live:
        try:
            source = build_source(config)
        except MissingCredentialsError as e:
            skipped_live = f"Live comparison skipped: {e}"

    try:
        report = verify_snapshot(path, registry=config.registry, source=source)
    except FileNotFoundError:
        print(f"Error: Backup file not found: {path}", file=sys.stderr)
        return 1

    if skipped_live:
        report.warnings.append(skipped_live)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_report(report))

    return 0 if report.restorable else 1


def cmd_full(args: argparse.Namespace) -> int:
    """Create a manual full backup."""
    try:
        config = _load_config(args)
        source = build_source(config)
        result = create_full_backup(config, source)
    except (ConfigError, MissingCredentialsError, SourceUnavailable, SnapshotWriteError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Full backup: {result.path} ({result.size_bytes / 1024:.2f} KB)")
    if result.data_path:
        print(f"Data export: {result.data_path}")
    for name, count in result.counts.items():
        print(f"  {name}: {count}")
    if result.deleted:
        print(f"Cleaned up {len(result.deleted)} old manual backup(s)")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show snapshot inventory, health and notification mode."""
    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    summary = tier_summary(config)
    health = load_health(config.meta_dir)
    policy = current_policy(config)

    print("Backup Status")
    print("=" * 60)
    print(f"{'Tier':<12} {'Files':>6} {'Retention':>10}  {'Latest':<26}")
    print("-" * 60)
    for tier, info in summary.items():
        print(f"{tier:<12} {info['files']:>6} {info['retention_days']:>9}d  {info['latest'] or '-':<26}")
    print()
    print(f"Health:        {health.status} ({health.consecutive_failures} consecutive failures)")
    print(f"Last success:  {health.last_success_at or '-'}")
    if health.last_error:
        print(f"Last error:    {health.last_error}")
    print(f"Notifications: {policy.mode}")
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    """Send the daily summary now."""
    try:
        config = _load_config(args)
        day = date.fromisoformat(args.date) if args.date else None
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    notifier = build_notifier(config)
    results = send_daily_summary(config, notifier, current_policy(config), day)
    if not results:
        print("No notification channels enabled.")
        return 0
    for channel, sent in results.items():
        print(f"{channel}: {'sent' if sent else 'not sent'}")
    return 0 if any(results.values()) else 1


def cmd_monitoring(args: argparse.Namespace) -> int:
    """Manage the notification policy record."""
    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    settings = config.notifications
    policy_file = settings.policy_file

    if args.action == "enable-intensive":
        hours = args.hours or settings.intensive_hours
        record = enable_intensive(policy_file, hours=hours, daily_summary_time=settings.daily_summary_time)
        print(f"Intensive monitoring enabled for {hours} hours")
        print(f"  Will switch to daily summaries after {record.intensive_until}")
        return 0

    if args.action == "disable-intensive":
        disable_intensive(policy_file, daily_summary_time=settings.daily_summary_time)
        print("Switched to daily summary mode")
        return 0

    if args.action == "status":
        record = load_policy_record(policy_file)
        policy = NotificationPolicy.derive(record, datetime.now(timezone.utc), settings.daily_summary_time)
        print(f"Policy file: {policy_file}")
        print(json.dumps(record.to_dict() if record else {}, indent=2))
        print(f"Intensive Mode: {'ENABLED' if policy.is_intensive else 'DISABLED'}")
        return 0

    if args.action == "test":
        notifier = build_notifier(config)
        if not notifier.channels:
            print("No notification channels enabled.")
            return 1
        event = BackupSucceeded(
            tiers=["Son"],
            counts={"items": 147},
            size_bytes={"Son": 150000},
            files={"Son": "test-backup.json"},
        )
        results = notifier.notify(event, current_policy(config), force=True)
        for channel, sent in results.items():
            print(f"{channel}: {'sent' if sent else 'FAILED'}")
        return 0 if all(results.values()) else 1

    print(f"Error: Unknown monitoring action: {args.action}", file=sys.stderr)
    return 1


def _add_config_arg(parser: argparse.ArgumentParser):
    parser.add_argument("--config", help="Path to backup config (default: $BACKUP_CONFIG or config/backup.yaml)")


def _add_run_args(parser: argparse.ArgumentParser):
    parser.add_argument("--now", help="Evaluate the schedule at this ISO-8601 time instead of now")


def _add_verify_args(parser: argparse.ArgumentParser):
    parser.add_argument("path", nargs="?", help="Snapshot file (default: newest snapshot, Son first)")
    parser.add_argument("--no-live", action="store_true", help="Skip the live count comparison")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")


def _setup(args: argparse.Namespace):
    load_environment()
    configure_logging(logging.DEBUG if getattr(args, "verbose", False) else logging.INFO)


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="tiered-backup",
        description="Tiered Grandfather-Father-Son database backups"
    )
    _add_config_arg(parser)
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run one scheduled backup tick")
    _add_run_args(run_parser)
    run_parser.set_defaults(func=cmd_run)

    verify_parser = subparsers.add_parser("verify", help="Verify a snapshot file")
    _add_verify_args(verify_parser)
    verify_parser.set_defaults(func=cmd_verify)

    full_parser = subparsers.add_parser("full", help="Create a manual full backup")
    full_parser.set_defaults(func=cmd_full)

    status_parser = subparsers.add_parser("status", help="Show snapshot inventory and health")
    status_parser.set_defaults(func=cmd_status)

    summary_parser = subparsers.add_parser("summary", help="Send the daily summary now")
    summary_parser.add_argument("--date", help="Local date (YYYY-MM-DD, default today)")
    summary_parser.set_defaults(func=cmd_summary)

    monitoring_parser = subparsers.add_parser("monitoring", help="Manage notification mode")
    monitoring_sub = monitoring_parser.add_subparsers(dest="action")
    enable_parser = monitoring_sub.add_parser("enable-intensive", help="Notify on every run for a while")
    enable_parser.add_argument("--hours", type=int, help="Intensive window length (default from config)")
    monitoring_sub.add_parser("disable-intensive", help="Switch to daily summary mode")
    monitoring_sub.add_parser("status", help="Show notification mode")
    monitoring_sub.add_parser("test", help="Send a test notification")
    monitoring_parser.set_defaults(func=cmd_monitoring)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0
    if args.command == "monitoring" and not args.action:
        monitoring_parser.print_help()
        return 0

    _setup(args)
    return args.func(args)


def run_backup_main(argv: Optional[list] = None) -> int:
    """Entry point for ``run-backup`` (cron)."""
    parser = argparse.ArgumentParser(prog="run-backup", description="Run one scheduled backup tick")
    _add_config_arg(parser)
    _add_run_args(parser)
    args = parser.parse_args(argv)
    _setup(args)
    return cmd_run(args)


def verify_backup_main(argv: Optional[list] = None) -> int:
    """Entry point for ``verify-backup``."""
    parser = argparse.ArgumentParser(prog="verify-backup", description="Verify a snapshot file")
    _add_config_arg(parser)
    _add_verify_args(parser)
    args = parser.parse_args(argv)
    _setup(args)
    return cmd_verify(args)


if __name__ == "__main__":
    sys.exit(main())
