"""
Registry of the datasets captured in every snapshot.

Each dataset maps a short snapshot name (``items``) to the backing table,
the key the source orders rows by, and the small set of fields the verifier
expects on a sample record.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class DatasetSpec:
    """One registered dataset."""
    name: str
    table: str
    order_by: str = "id"
    required_fields: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "table": self.table,
            "order_by": self.order_by,
            "required_fields": list(self.required_fields),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatasetSpec":
        return cls(
            name=data["name"],
            table=data.get("table", data["name"]),
            order_by=data.get("order_by", "id"),
            required_fields=tuple(data.get("required_fields", []) or []),
        )


DEFAULT_DATASETS = (
    DatasetSpec(
        name="items",
        table="backlog_items",
        order_by="id",
        required_fields=("id", "project", "epic", "status", "user_story"),
    ),
    DatasetSpec(
        name="roles",
        table="user_project_roles",
        order_by="created_at",
        required_fields=("id", "user_id", "project", "role"),
    ),
    DatasetSpec(
        name="orderings",
        table="user_custom_order",
        order_by="created_at",
        required_fields=("user_id", "item_id", "display_order"),
    ),
)


class DatasetRegistry:
    """Ordered, name-addressable collection of DatasetSpec."""

    def __init__(self, datasets=DEFAULT_DATASETS):
        self._datasets: Dict[str, DatasetSpec] = {}
        for spec in datasets:
            if spec.name in self._datasets:
                raise ValueError(f"Duplicate dataset name: {spec.name}")
            self._datasets[spec.name] = spec

    def __iter__(self) -> Iterator[DatasetSpec]:
        return iter(self._datasets.values())

    def __len__(self) -> int:
        return len(self._datasets)

    def __contains__(self, name: str) -> bool:
        return name in self._datasets

    @property
    def names(self) -> List[str]:
        return list(self._datasets)

    def get(self, name: str) -> Optional[DatasetSpec]:
        return self._datasets.get(name)

    def required_fields(self, name: str) -> Tuple[str, ...]:
        spec = self._datasets.get(name)
        return spec.required_fields if spec else ()

    @classmethod
    def from_config(cls, entries: Optional[List[Dict[str, Any]]]) -> "DatasetRegistry":
        """Build a registry from config entries, or the defaults when none given."""
        if not entries:
            return cls()
        return cls(DatasetSpec.from_dict(e) for e in entries)
