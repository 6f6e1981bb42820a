"""Snapshot tiers and their static retention configuration."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class Tier(str, Enum):
    """Retention classes, each with its own cadence and expiry window."""
    SON = "Son"                  # hourly
    FATHER = "Father"            # daily
    GRANDFATHER = "Grandfather"  # weekly

    @classmethod
    def parse(cls, value: str) -> "Tier":
        """Accept either the value ("Son") or the key ("son", "SON")."""
        for tier in cls:
            if value == tier.value or value.upper() == tier.name:
                return tier
        raise ValueError(f"Unknown tier: {value}")


# Highest tier first; a due tier implies every tier after it
CASCADE_ORDER = (Tier.GRANDFATHER, Tier.FATHER, Tier.SON)


@dataclass(frozen=True)
class TierConfig:
    """Where a tier's snapshots live and how long they are kept."""
    name: Tier
    directory: str
    retention_days: int


DEFAULT_TIER_CONFIGS: Dict[Tier, TierConfig] = {
    Tier.SON: TierConfig(Tier.SON, "son", 7),
    Tier.FATHER: TierConfig(Tier.FATHER, "father", 28),
    Tier.GRANDFATHER: TierConfig(Tier.GRANDFATHER, "grandfather", 84),
}
