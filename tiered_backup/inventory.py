"""Listing of the snapshots currently on disk."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from .snapshot import matches_tier
from .tiers import Tier

# Most recent data first
LOOKUP_ORDER = (Tier.SON, Tier.FATHER, Tier.GRANDFATHER)


def list_snapshots(config, tier: Tier) -> List[Path]:
    """Snapshot files of ``tier``, newest first. Temp and foreign files are ignored."""
    directory = config.tier_dir(tier)
    if not directory.is_dir():
        return []
    files = [p for p in directory.iterdir() if p.is_file() and matches_tier(tier, p.name)]
    # Filenames start with the local date, so name order is capture order
    return sorted(files, key=lambda p: p.name, reverse=True)


def latest_snapshot(config, tier: Optional[Tier] = None) -> Optional[Path]:
    """Newest snapshot of ``tier``, or of the first tier that has one (Son first)."""
    tiers = [tier] if tier else LOOKUP_ORDER
    for candidate in tiers:
        files = list_snapshots(config, candidate)
        if files:
            return files[0]
    return None


def tier_summary(config) -> Dict[str, Dict[str, Any]]:
    summary = {}
    for tier in LOOKUP_ORDER:
        files = list_snapshots(config, tier)
        tier_config = config.tier_config(tier)
        summary[tier.value] = {
            "files": len(files),
            "retention_days": tier_config.retention_days,
            "directory": str(config.tier_dir(tier)),
            "latest": files[0].name if files else None,
            "total_bytes": sum(p.stat().st_size for p in files),
        }
    return summary
