"""Tests for snapshot building, naming and atomic writes."""

import json
from datetime import datetime, timezone
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from tiered_backup.snapshot import (
    build_snapshot,
    load_snapshot_file,
    MANUAL_TIER,
    matches_tier,
    parse_capture_time,
    snapshot_filename,
    SnapshotWriteError,
    StructurallyInvalid,
    write_snapshot,
)
from tiered_backup.tiers import Tier

LONDON = ZoneInfo("Europe/London")


@pytest.fixture
def snapshot(fake_source):
    datasets = {name: fake_source.fetch_dataset(name) for name in ("items", "roles", "orderings")}
    return build_snapshot(Tier.FATHER, datasets, datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc))


class TestBuildSnapshot:
    """Tests for build_snapshot()."""

    def test_counts_derived_from_records(self, snapshot):
        assert snapshot.counts == {"items": 3, "roles": 2, "orderings": 2}
        assert snapshot.total_records == 7

    def test_count_invariant(self, snapshot):
        for name, count in snapshot.counts.items():
            assert len(snapshot.datasets[name]) == count

    def test_timestamp_is_utc(self):
        snap = build_snapshot(Tier.SON, {}, datetime(2024, 6, 10, 9, 0, tzinfo=LONDON))
        assert snap.timestamp == "2024-06-10T08:00:00+00:00"

    def test_document_shape(self, snapshot):
        doc = snapshot.to_dict()
        assert list(doc) == ["timestamp", "schemaVersion", "tier", "counts", "datasets"]
        assert doc["tier"] == "Father"
        assert doc["schemaVersion"] == "2.0"
        assert isinstance(doc["datasets"]["items"], list)

    def test_empty_dataset(self):
        snap = build_snapshot(Tier.SON, {"items": []}, datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))
        assert snap.counts == {"items": 0}

    def test_deterministic(self, fake_source):
        datasets = {"items": fake_source.fetch_dataset("items")}
        now = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)
        assert build_snapshot(Tier.SON, datasets, now).to_json() == build_snapshot(Tier.SON, datasets, now).to_json()


class TestFilenames:
    """Tests for tier filename conventions."""

    def test_son_is_hourly(self):
        assert snapshot_filename(Tier.SON, datetime(2024, 6, 10, 9, 0)) == "2024-06-10-0900.json"
        assert snapshot_filename(Tier.SON, datetime(2024, 6, 11, 0, 30)) == "2024-06-11-0000.json"

    def test_father_is_daily(self):
        assert snapshot_filename(Tier.FATHER, datetime(2024, 6, 10, 9, 0)) == "2024-06-10.json"

    def test_grandfather_has_iso_week(self):
        assert snapshot_filename(Tier.GRANDFATHER, datetime(2024, 6, 9, 9, 0)) == "2024-06-09-week23.json"

    def test_grandfather_week_zero_padded(self):
        assert snapshot_filename(Tier.GRANDFATHER, datetime(2024, 1, 7, 9, 0)) == "2024-01-07-week01.json"

    def test_manual(self):
        assert snapshot_filename(MANUAL_TIER, datetime(2024, 6, 10, 9, 15, 2)) == "backup-full-2024-06-10T09-15-02.json"

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError):
            snapshot_filename("Uncle", datetime(2024, 6, 10, 9, 0))

    def test_patterns_do_not_overlap(self):
        assert matches_tier(Tier.SON, "2024-06-10-0900.json")
        assert not matches_tier(Tier.FATHER, "2024-06-10-0900.json")
        assert matches_tier(Tier.FATHER, "2024-06-10.json")
        assert not matches_tier(Tier.SON, "2024-06-10.json")
        assert matches_tier(Tier.GRANDFATHER, "2024-06-09-week23.json")
        assert not matches_tier(Tier.SON, "2024-06-09-week23.json")

    def test_temp_files_never_match(self):
        assert not matches_tier(Tier.SON, ".2024-06-10-0900.json.x1y2.tmp")
        assert not matches_tier(MANUAL_TIER, "latest-full.json")

    def test_parse_capture_time(self):
        parsed = parse_capture_time(Tier.SON, "2024-06-10-1400.json", LONDON)
        assert parsed == datetime(2024, 6, 10, 14, 0, tzinfo=LONDON)

    def test_parse_capture_time_invalid_date(self):
        assert parse_capture_time(Tier.FATHER, "2024-13-45.json", LONDON) is None
        assert parse_capture_time(Tier.FATHER, "notes.txt", LONDON) is None


class TestWriteSnapshot:
    """Tests for atomic persistence."""

    def test_write_and_read_back(self, snapshot, tmp_path):
        path, size = write_snapshot(snapshot, tmp_path / "father", "2024-06-10.json")

        assert path == tmp_path / "father" / "2024-06-10.json"
        assert size == path.stat().st_size
        assert load_snapshot_file(path) == json.loads(snapshot.to_json())

    def test_no_temp_files_left(self, snapshot, tmp_path):
        write_snapshot(snapshot, tmp_path, "2024-06-10.json")
        assert [p.name for p in tmp_path.iterdir()] == ["2024-06-10.json"]

    def test_overwrite_within_bucket(self, fake_source, tmp_path):
        now = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)
        first = build_snapshot(Tier.FATHER, {"items": fake_source.fetch_dataset("items")[:1]}, now)
        second = build_snapshot(Tier.FATHER, {"items": fake_source.fetch_dataset("items")}, now)

        write_snapshot(first, tmp_path, "2024-06-10.json")
        write_snapshot(second, tmp_path, "2024-06-10.json")

        assert len(list(tmp_path.iterdir())) == 1
        assert load_snapshot_file(tmp_path / "2024-06-10.json")["counts"] == {"items": 3}

    def test_failed_rename_leaves_nothing(self, snapshot, tmp_path):
        with patch("tiered_backup.snapshot.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(SnapshotWriteError):
                write_snapshot(snapshot, tmp_path, "2024-06-10.json")

        assert list(tmp_path.iterdir()) == []

    def test_killed_before_rename_leaves_no_visible_snapshot(self, snapshot, tmp_path):
        """A process killed between temp write and rename leaves only a hidden temp file."""
        with patch("tiered_backup.snapshot.os.replace", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                write_snapshot(snapshot, tmp_path, "2024-06-10.json")

        names = [p.name for p in tmp_path.iterdir()]
        assert not any(matches_tier(Tier.FATHER, n) for n in names)
        assert all(n.startswith(".") and n.endswith(".tmp") for n in names)

    def test_existing_snapshot_survives_failed_overwrite(self, snapshot, tmp_path):
        write_snapshot(snapshot, tmp_path, "2024-06-10.json")
        before = (tmp_path / "2024-06-10.json").read_text()

        with patch("tiered_backup.snapshot.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(SnapshotWriteError):
                write_snapshot(snapshot, tmp_path, "2024-06-10.json")

        assert (tmp_path / "2024-06-10.json").read_text() == before


class TestLoadSnapshotFile:
    """Tests for load_snapshot_file()."""

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(StructurallyInvalid):
            load_snapshot_file(path)

    def test_non_object_root(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(StructurallyInvalid):
            load_snapshot_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_snapshot_file(tmp_path / "missing.json")
