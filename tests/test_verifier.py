"""
Tests for snapshot verification.

A snapshot is restorable iff it is structurally valid and every recorded
count matches the records present. Live drift never affects restorability.
"""

import json
from datetime import datetime, timezone

import pytest

from tiered_backup.registry import DatasetRegistry, DatasetSpec
from tiered_backup.snapshot import build_snapshot, write_snapshot
from tiered_backup.tiers import Tier
from tiered_backup.verifier import (
    CountMismatch,
    format_report,
    LiveDrift,
    verify_document,
    verify_snapshot,
)


@pytest.fixture
def snapshot_path(tmp_path, fake_source):
    datasets = {name: fake_source.fetch_dataset(name) for name in ("items", "roles", "orderings")}
    snap = build_snapshot(Tier.FATHER, datasets, datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc))
    path, _ = write_snapshot(snap, tmp_path, "2024-06-10.json")
    return path


ITEMS_ONLY = DatasetRegistry([DatasetSpec("items", "backlog_items")])


def rewrite(path, mutate):
    data = json.loads(path.read_text())
    mutate(data)
    path.write_text(json.dumps(data))


class TestValidSnapshot:
    """Tests for a snapshot straight from the builder."""

    def test_restorable(self, snapshot_path):
        report = verify_snapshot(snapshot_path)

        assert report.structurally_valid
        assert report.count_mismatches == []
        assert report.restorable
        assert report.total_records == 7
        assert report.tier == "Father"
        assert report.schema_version == "2.0"
        assert report.size_bytes == snapshot_path.stat().st_size

    def test_read_only(self, snapshot_path):
        before = snapshot_path.read_bytes()
        mtime = snapshot_path.stat().st_mtime

        verify_snapshot(snapshot_path)

        assert snapshot_path.read_bytes() == before
        assert snapshot_path.stat().st_mtime == mtime

    def test_empty_dataset_is_fine(self):
        doc = {"timestamp": "t", "schemaVersion": "2.0", "counts": {"items": 0}, "datasets": {"items": []}}
        report = verify_document(doc, registry=ITEMS_ONLY)
        assert report.restorable


class TestCountMismatches:
    """Tests for recorded counts that disagree with the records."""

    def test_count_larger_than_records(self, fake_source):
        """counts.items == 3 with only 2 records is one mismatch, not restorable."""
        doc = {
            "timestamp": "2024-06-10T08:00:00+00:00",
            "schemaVersion": "2.0",
            "counts": {"items": 3},
            "datasets": {"items": fake_source.fetch_dataset("items")[:2]},
        }

        report = verify_document(doc, registry=ITEMS_ONLY)

        assert report.count_mismatches == [CountMismatch(dataset="items", expected=3, actual=2)]
        assert report.structurally_valid
        assert not report.restorable

    def test_mutated_count_on_disk(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["counts"].update(items=99))

        report = verify_snapshot(snapshot_path)

        assert len(report.count_mismatches) == 1
        assert report.count_mismatches[0].dataset == "items"
        assert not report.restorable

    def test_all_mismatches_reported(self, snapshot_path):
        def mutate(d):
            d["counts"]["items"] = 1
            d["counts"]["roles"] = 5

        rewrite(snapshot_path, mutate)

        report = verify_snapshot(snapshot_path)

        assert sorted(m.dataset for m in report.count_mismatches) == ["items", "roles"]


class TestStructure:
    """Tests for structural failures."""

    @pytest.mark.parametrize("field", ["timestamp", "schemaVersion", "counts", "datasets"])
    def test_missing_top_level_field(self, snapshot_path, field):
        rewrite(snapshot_path, lambda d: d.pop(field))

        report = verify_snapshot(snapshot_path)

        assert not report.structurally_valid
        assert not report.restorable
        assert f"Missing required field: {field}" in report.errors

    def test_counts_wrong_type(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d.update(counts=[1, 2]))
        report = verify_snapshot(snapshot_path)
        assert not report.structurally_valid

    def test_non_integer_count(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["counts"].update(items="3"))
        report = verify_snapshot(snapshot_path)
        assert not report.structurally_valid

    def test_counted_dataset_missing(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["datasets"].pop("roles"))

        report = verify_snapshot(snapshot_path)

        assert not report.structurally_valid
        assert "datasets.roles is missing" in report.errors
        assert report.count_mismatches == []

    def test_dataset_dropped_with_its_count(self, snapshot_path):
        """A table missing from both counts and datasets is not a restorable backup."""
        def mutate(d):
            d["counts"].pop("roles")
            d["datasets"].pop("roles")

        rewrite(snapshot_path, mutate)

        report = verify_snapshot(snapshot_path)

        assert not report.structurally_valid
        assert not report.restorable
        assert report.errors == ["Registered dataset missing from snapshot: roles"]

    def test_only_items_captured(self, fake_source):
        items = fake_source.fetch_dataset("items")
        doc = {"timestamp": "t", "schemaVersion": "2.0", "counts": {"items": len(items)}, "datasets": {"items": items}}

        report = verify_document(doc)

        assert not report.restorable
        assert sorted(report.errors) == [
            "Registered dataset missing from snapshot: orderings",
            "Registered dataset missing from snapshot: roles",
        ]

    def test_dataset_not_a_list(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["datasets"].update(roles={"id": 1}))
        report = verify_snapshot(snapshot_path)
        assert not report.structurally_valid

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text('{"timestamp": "2024-06-10T08:00:00+00:00", "counts": {')

        report = verify_snapshot(path)

        assert not report.structurally_valid
        assert not report.restorable
        assert report.errors

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            verify_snapshot(tmp_path / "nope.json")


class TestRequiredFields:
    """Tests for the sample-record contract."""

    def test_missing_required_field(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["datasets"]["items"][0].pop("epic"))

        report = verify_snapshot(snapshot_path)

        assert report.missing_fields == [{"dataset": "items", "missing": ["epic"]}]
        assert not report.structurally_valid
        assert not report.restorable

    def test_only_first_record_sampled(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["datasets"]["items"][1].pop("epic"))
        report = verify_snapshot(snapshot_path)
        assert report.restorable

    def test_custom_registry(self, snapshot_path):
        registry = DatasetRegistry([DatasetSpec("items", "backlog_items", required_fields=("id", "owner"))])

        report = verify_snapshot(snapshot_path, registry=registry)

        assert report.missing_fields == [{"dataset": "items", "missing": ["owner"]}]

    def test_unregistered_datasets_in_snapshot_are_fine(self, snapshot_path):
        report = verify_snapshot(snapshot_path, registry=ITEMS_ONLY)
        assert report.restorable

    def test_registered_dataset_not_captured(self, snapshot_path):
        registry = DatasetRegistry([DatasetSpec("items", "backlog_items"), DatasetSpec("tickets", "tickets")])

        report = verify_snapshot(snapshot_path, registry=registry)

        assert not report.structurally_valid
        assert not report.restorable
        assert "Registered dataset missing from snapshot: tickets" in report.errors


class TestLiveDrift:
    """Tests for the optional live comparison."""

    def test_drift_reported(self, snapshot_path, make_source):
        source = make_source(live_counts={"items": 5})

        report = verify_snapshot(snapshot_path, source=source)

        assert report.live_drift == [LiveDrift(dataset="items", backup_count=3, live_count=5)]
        assert report.live_counts == {"items": 5, "roles": 2, "orderings": 2}
        assert report.restorable

    def test_live_failure_is_warning(self, snapshot_path, make_source):
        source = make_source(fail_on={"roles"})

        report = verify_snapshot(snapshot_path, source=source)

        assert report.restorable
        assert "roles" not in report.live_counts
        assert any("roles" in w for w in report.warnings)


class TestFormatReport:
    """Tests for the text rendering."""

    def test_restorable_report(self, snapshot_path):
        text = format_report(verify_snapshot(snapshot_path))
        assert "Restorable:       YES" in text
        assert "7 records would be written" in text

    def test_mismatch_report(self, snapshot_path):
        rewrite(snapshot_path, lambda d: d["counts"].update(items=4))
        text = format_report(verify_snapshot(snapshot_path))
        assert "MISMATCH items: expected 4, found 3" in text
        assert "Restorable:       NO" in text

    def test_to_dict_includes_restorable(self, snapshot_path):
        data = verify_snapshot(snapshot_path).to_dict()
        assert data["restorable"] is True
        json.dumps(data)
