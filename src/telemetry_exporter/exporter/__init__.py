"""
Resilient exporter: bounded buffers, circuit breaker, WAL/DLQ durability for
critical spans, and a periodic health check.
"""

from .alerts import AlertBus, AlertLevel, HealthAlert
from .errors import (
    ExporterError,
    JournalWriteError,
    StoreConnectionError,
    StoreDataError,
    map_store_error,
)
from .exporter import LifecycleState, TelemetryExporter
from .health import BufferStats, ExporterMetrics, HealthStatus
from .policy import CircuitBreaker, CircuitState, RetryPolicy
from .queue import BoundedBuffer
from .settings import ExporterSettings, get_settings
from .types import (
    BackendStore,
    CollectionOptions,
    CriticalityPredicate,
    IndexOptions,
    usage_attribute_predicate,
)

__all__ = [
    "TelemetryExporter",
    "LifecycleState",
    "ExporterSettings",
    "get_settings",
    "BackendStore",
    "CollectionOptions",
    "IndexOptions",
    "CriticalityPredicate",
    "usage_attribute_predicate",
    "BoundedBuffer",
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
    "HealthStatus",
    "ExporterMetrics",
    "BufferStats",
    "HealthAlert",
    "AlertLevel",
    "AlertBus",
    "ExporterError",
    "StoreConnectionError",
    "StoreDataError",
    "JournalWriteError",
    "map_store_error",
]
