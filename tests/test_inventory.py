"""Tests for snapshot inventory."""

from tiered_backup.inventory import latest_snapshot, list_snapshots, tier_summary
from tiered_backup.tiers import Tier


def touch(directory, *names):
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_text("{}")


class TestListSnapshots:
    """Tests for list_snapshots()."""

    def test_newest_first(self, backup_config):
        touch(backup_config.tier_dir(Tier.SON), "2024-06-09-2300.json", "2024-06-10-0900.json", "2024-06-10-1000.json")

        names = [p.name for p in list_snapshots(backup_config, Tier.SON)]

        assert names == ["2024-06-10-1000.json", "2024-06-10-0900.json", "2024-06-09-2300.json"]

    def test_ignores_temp_and_foreign(self, backup_config):
        touch(backup_config.tier_dir(Tier.SON), "2024-06-10-0900.json", ".2024-06-10-1000.json.x.tmp", "README")
        assert [p.name for p in list_snapshots(backup_config, Tier.SON)] == ["2024-06-10-0900.json"]

    def test_missing_directory(self, backup_config):
        assert list_snapshots(backup_config, Tier.FATHER) == []


class TestLatestSnapshot:
    """Tests for latest_snapshot()."""

    def test_prefers_son(self, backup_config):
        touch(backup_config.tier_dir(Tier.FATHER), "2024-06-10.json")
        touch(backup_config.tier_dir(Tier.SON), "2024-06-10-1400.json")

        assert latest_snapshot(backup_config).name == "2024-06-10-1400.json"

    def test_falls_back_to_father(self, backup_config):
        touch(backup_config.tier_dir(Tier.FATHER), "2024-06-09.json", "2024-06-10.json")
        assert latest_snapshot(backup_config).name == "2024-06-10.json"

    def test_specific_tier(self, backup_config):
        touch(backup_config.tier_dir(Tier.SON), "2024-06-10-1400.json")
        touch(backup_config.tier_dir(Tier.GRANDFATHER), "2024-06-09-week23.json")

        assert latest_snapshot(backup_config, Tier.GRANDFATHER).name == "2024-06-09-week23.json"

    def test_nothing(self, backup_config):
        assert latest_snapshot(backup_config) is None


class TestTierSummary:
    """Tests for tier_summary()."""

    def test_summary(self, backup_config):
        touch(backup_config.tier_dir(Tier.SON), "2024-06-10-0900.json", "2024-06-10-1000.json")

        summary = tier_summary(backup_config)

        assert summary["Son"]["files"] == 2
        assert summary["Son"]["latest"] == "2024-06-10-1000.json"
        assert summary["Son"]["retention_days"] == 7
        assert summary["Father"]["files"] == 0
        assert summary["Grandfather"]["latest"] is None
