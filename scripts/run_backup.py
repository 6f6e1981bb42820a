#!/usr/bin/env python3
"""
Hourly backup tick (cron-friendly).

Decides which Grandfather-Father-Son tiers are due, captures every dataset
once, writes the snapshots, prunes expired ones and sends notifications.

Usage:
    # Normal run (crontab: 0 * * * *)
    python scripts/run_backup.py

    # Evaluate the schedule at a specific time
    python scripts/run_backup.py --now 2024-06-09T09:00:00

Exit code is 0 on success or an outside-window tick, 1 on failure.
"""

import sys
from pathlib import Path

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from tiered_backup.cli import run_backup_main


if __name__ == "__main__":
    sys.exit(run_backup_main())
