#!/usr/bin/env python3
"""
Verify that a snapshot is restorable.

Usage:
    # Newest snapshot, with live count comparison
    python scripts/verify_backup.py

    # Specific file, offline
    python scripts/verify_backup.py backups/father/2024-06-10.json --no-live

Exit code is non-zero iff the snapshot is not restorable.
"""

import sys
from pathlib import Path

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from tiered_backup.cli import verify_backup_main


if __name__ == "__main__":
    sys.exit(verify_backup_main())
