"""
Snapshot verification.

Proves a snapshot file can be trusted for disaster recovery without touching
any store: the document must be structurally sound, every recorded count must
match the records actually present, every registered dataset must be present,
and a sample record of each must carry its required fields. Live counts,
when a source is given, are compared for information only.

Usage:
    report = verify_snapshot("backups/father/2024-06-10.json", registry)
    print(format_report(report))
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import jsonschema

from .registry import DatasetRegistry
from .snapshot import load_snapshot_file, StructurallyInvalid
from .source import SourceAdapter, SourceUnavailable

logger = logging.getLogger(__name__)


SNAPSHOT_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Snapshot",
    "type": "object",
    "required": ["timestamp", "schemaVersion", "counts", "datasets"],
    "properties": {
        "timestamp": {"type": "string", "minLength": 1},
        "schemaVersion": {"type": "string", "minLength": 1},
        "tier": {"type": "string"},
        "counts": {
            "type": "object",
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "datasets": {"type": "object"},
    },
}


@dataclass
class CountMismatch:
    """A recorded count that disagrees with the records present."""
    dataset: str
    expected: int
    actual: int


@dataclass
class LiveDrift:
    dataset: str
    backup_count: int
    live_count: int


@dataclass
class VerificationReport:
    path: str
    structurally_valid: bool = False
    count_mismatches: List[CountMismatch] = field(default_factory=list)
    live_drift: List[LiveDrift] = field(default_factory=list)
    timestamp: Optional[str] = None
    tier: Optional[str] = None
    schema_version: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_fields: List[Dict[str, Any]] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    total_records: int = 0
    size_bytes: int = 0
    live_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def restorable(self) -> bool:
        return self.structurally_valid and not self.count_mismatches

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["restorable"] = self.restorable
        return d


def _schema_errors(data: Dict[str, Any]) -> List[str]:
    validator = jsonschema.Draft7Validator(SNAPSHOT_SCHEMA)
    errors = []
    for e in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        location = ".".join(str(p) for p in e.absolute_path)
        if "is a required property" in e.message:
            prop = e.message.split("'")[1] if "'" in e.message else "unknown"
            errors.append(f"Missing required field: {prop}")
        elif location:
            errors.append(f"{location}: {e.message}")
        else:
            errors.append(f"Schema validation failed: {e.message}")
    return errors


def verify_document(
    data: Dict[str, Any],
    registry: Optional[DatasetRegistry] = None,
    source: Optional[SourceAdapter] = None,
    path: str = "<memory>",
) -> VerificationReport:
    """
    Verify an already-parsed snapshot document.

    Args:
        data: Snapshot document
        registry: Datasets whose required fields are checked (default registry if None)
        source: Optional live source for drift comparison
        path: Label used in the report

    Returns:
        VerificationReport
    """
    registry = registry or DatasetRegistry()
    report = VerificationReport(path=path)

    # 1. Structure
    report.errors.extend(_schema_errors(data))
    report.timestamp = data.get("timestamp") if isinstance(data.get("timestamp"), str) else None
    report.tier = data.get("tier") if isinstance(data.get("tier"), str) else None
    report.schema_version = data.get("schemaVersion") if isinstance(data.get("schemaVersion"), str) else None

    counts = data.get("counts") if isinstance(data.get("counts"), dict) else {}
    datasets = data.get("datasets") if isinstance(data.get("datasets"), dict) else {}

    # 2. Counts against records
    valid_counts: Dict[str, int] = {}
    for name, expected in counts.items():
        if not isinstance(expected, int) or isinstance(expected, bool):
            continue
        valid_counts[name] = expected
        if name not in datasets:
            report.errors.append(f"datasets.{name} is missing")
            continue
        records = datasets[name]
        if not isinstance(records, list):
            report.errors.append(f"datasets.{name} must be a list, got {type(records).__name__}")
            continue
        if len(records) != expected:
            report.count_mismatches.append(CountMismatch(dataset=name, expected=expected, actual=len(records)))

    for name in datasets:
        if name not in counts:
            report.warnings.append(f"datasets.{name} has no recorded count")

    report.counts = valid_counts
    report.total_records = sum(len(r) for r in datasets.values() if isinstance(r, list))

    # 3. Sample record contract
    for spec in registry:
        records = datasets.get(spec.name)
        if records is None:
            # Counted datasets were already reported above
            if spec.name not in counts:
                report.errors.append(f"Registered dataset missing from snapshot: {spec.name}")
            continue
        if not isinstance(records, list) or not records:
            continue
        sample = records[0]
        if not isinstance(sample, dict):
            report.errors.append(f"datasets.{spec.name}[0] must be an object")
            continue
        missing = [f for f in spec.required_fields if f not in sample]
        if missing:
            report.missing_fields.append({"dataset": spec.name, "missing": missing})
            report.errors.append(f"datasets.{spec.name} sample record missing fields: {', '.join(missing)}")

    report.structurally_valid = not report.errors

    # 4. Live drift (informational)
    if source is not None:
        for name, backup_count in valid_counts.items():
            try:
                live = source.count_dataset(name)
            except SourceUnavailable as e:
                report.warnings.append(f"Live count unavailable for {name}: {e.message}")
                continue
            report.live_counts[name] = live
            if live != backup_count:
                report.live_drift.append(LiveDrift(dataset=name, backup_count=backup_count, live_count=live))

    return report


def verify_snapshot(
    path: Union[str, Path],
    registry: Optional[DatasetRegistry] = None,
    source: Optional[SourceAdapter] = None,
) -> VerificationReport:
    """
    Verify a snapshot file. Read-only.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    try:
        data = load_snapshot_file(path)
    except StructurallyInvalid as e:
        report = VerificationReport(path=str(path), structurally_valid=False, errors=[str(e)])
        report.size_bytes = path.stat().st_size
        logger.warning(f"Snapshot {path} is structurally invalid: {e}")
        return report

    report = verify_document(data, registry=registry, source=source, path=str(path))
    report.size_bytes = path.stat().st_size

    if report.restorable:
        logger.info(f"Snapshot {path.name} verified: {report.total_records} records restorable")
    else:
        logger.warning(
            f"Snapshot {path.name} NOT restorable: {len(report.errors)} errors, "
            f"{len(report.count_mismatches)} count mismatches"
        )
    return report


def format_report(report: VerificationReport) -> str:
    """Human-readable verification report."""
    lines = [
        "=" * 60,
        "BACKUP VERIFICATION",
        "=" * 60,
        f"File:            {report.path}",
        f"Size:            {report.size_bytes / 1024:.2f} KB",
        f"Timestamp:       {report.timestamp or '-'}",
        f"Tier:            {report.tier or '-'}",
        f"Schema version:  {report.schema_version or '-'}",
        "",
        f"Structure:       {'OK' if report.structurally_valid else 'INVALID'}",
    ]
    for error in report.errors:
        lines.append(f"  - {error}")

    lines.append("")
    lines.append("Counts:")
    for name, count in report.counts.items():
        lines.append(f"  {name}: {count}")
    for m in report.count_mismatches:
        lines.append(f"  MISMATCH {m.dataset}: expected {m.expected}, found {m.actual}")

    if report.live_counts or report.live_drift:
        lines.append("")
        lines.append("Live comparison:")
        for name, live in report.live_counts.items():
            lines.append(f"  {name}: live {live}")
        for d in report.live_drift:
            diff = d.live_count - d.backup_count
            lines.append(f"  DRIFT {d.dataset}: backup {d.backup_count}, live {d.live_count} ({diff:+d})")

    if report.warnings:
        lines.append("")
        lines.append("Warnings:")
        for warning in report.warnings:
            lines.append(f"  - {warning}")

    lines.append("")
    lines.append(f"Dry-run restore:  {report.total_records} records would be written")
    lines.append(f"Restorable:       {'YES' if report.restorable else 'NO'}")
    lines.append("=" * 60)
    return "\n".join(lines)
