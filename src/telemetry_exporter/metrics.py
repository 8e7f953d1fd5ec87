"""
Prometheus metrics for the telemetry exporter.

Registered on the global REGISTRY at import time; the exporter labels every
series with its ``exporter`` name so several instances can coexist.
"""

from prometheus_client import Counter, Gauge

EXPORTER_BUFFERED = Gauge(
    "telemetry_exporter_buffered_records",
    "Records currently buffered in memory",
    ["exporter", "buffer"],
)

EXPORTER_FLUSH_TOTAL = Counter(
    "telemetry_exporter_flush_total",
    "Flush attempts by buffer and outcome",
    ["exporter", "buffer", "outcome"],
)

EXPORTER_FLUSHED_RECORDS = Counter(
    "telemetry_exporter_flushed_records_total",
    "Records confirmed written to the backend",
    ["exporter", "buffer"],
)

EXPORTER_DROPPED_RECORDS = Counter(
    "telemetry_exporter_dropped_records_total",
    "Best-effort records dropped on overflow",
    ["exporter", "buffer"],
)

EXPORTER_DLQ_RECORDS = Counter(
    "telemetry_exporter_dlq_records_total",
    "Critical spans relocated to the dead letter queue",
    ["exporter"],
)

EXPORTER_CIRCUIT_STATE = Gauge(
    "telemetry_exporter_circuit_state",
    "Circuit breaker state (0=closed, 1=half-open, 2=open)",
    ["exporter"],
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half-open": 1, "open": 2}


class MetricsRegistry:
    """Centralized access to exporter metrics."""

    buffered = EXPORTER_BUFFERED
    flush_total = EXPORTER_FLUSH_TOTAL
    flushed_records = EXPORTER_FLUSHED_RECORDS
    dropped_records = EXPORTER_DROPPED_RECORDS
    dlq_records = EXPORTER_DLQ_RECORDS
    circuit_state = EXPORTER_CIRCUIT_STATE


metrics_registry = MetricsRegistry()
