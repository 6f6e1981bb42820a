"""
Tiered Backup - Grandfather-Father-Son snapshots of a hosted database.

Captures every registered dataset into versioned JSON snapshots on an hourly,
daily and weekly cadence, prunes them per tier, and verifies that any
snapshot is restorable before it is trusted.

Modules:
    tiers - Tier enum and retention configuration
    registry - Registered datasets and their required-fields contract
    config - YAML + environment configuration loading
    source - Data source contract and the Supabase (PostgREST) client
    scheduler - Which tiers are due at a given time
    snapshot - Snapshot building, naming and atomic writes
    retention - Per-tier pruning of aged snapshots
    runner - One scheduler tick: fetch, write, prune, notify
    verifier - Read-only snapshot verification reports
    notify - Notification events, policy and channels
    health - Consecutive-failure tracking across ticks
    inventory - Snapshot listing per tier
    manual - On-demand full backups
    cli - Command-line interface entrypoints
"""

__version__ = "2.0.0"
