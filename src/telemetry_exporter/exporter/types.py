from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class CollectionOptions:
    """Provisioning options for a time-partitioned collection."""

    time_field: str = "timestamp"
    meta_field: str = "metadata"
    granularity: str = "seconds"
    retention_days: int = 0  # 0 = keep forever


@dataclass(frozen=True)
class IndexOptions:
    name: str | None = None
    unique: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class BackendStore(Protocol):
    """Time-series store the exporter writes to.

    Any store with ordered bulk insert and index provisioning fits.
    Records arrive as JSON-safe dicts.
    """

    async def connect(self) -> None: ...

    async def bulk_insert(self, collection: str, records: Sequence[dict[str, Any]]) -> int: ...

    async def ensure_collection(self, name: str, options: CollectionOptions) -> None: ...

    async def create_index(
        self, collection: str, keys: Sequence[str], options: IndexOptions | None = None
    ) -> None: ...

    async def close(self) -> None: ...


# Receives the span's attribute map; True marks the span critical.
CriticalityPredicate = Callable[[Mapping[str, Any]], bool]


def usage_attribute_predicate(attribute: str) -> CriticalityPredicate:
    """Critical iff ``attribute`` is present with a truthy value."""

    def _is_critical(attributes: Mapping[str, Any]) -> bool:
        return bool(attributes.get(attribute))

    return _is_critical
