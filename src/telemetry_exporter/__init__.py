"""
Telemetry Exporter

Non-blocking export of structured logs and trace spans to a time-series
store, with write-ahead logging for billing-critical spans.

Usage:
    from telemetry_exporter import TelemetryExporter, ExporterSettings

    exporter = TelemetryExporter.from_settings(ExporterSettings())
    await exporter.initialize()
    exporter.export_log("info", "hello", {"component": "api"})
    await exporter.dispose()
"""

from .exporter import (
    ExporterMetrics,
    ExporterSettings,
    HealthStatus,
    LifecycleState,
    TelemetryExporter,
)
from .models import ErrorInfo, LogLevel, LogRecord, Span, SpanRecord, SpanStatus

__version__ = "0.1.0"
__all__ = [
    "TelemetryExporter",
    "ExporterSettings",
    "LifecycleState",
    "HealthStatus",
    "ExporterMetrics",
    "LogLevel",
    "LogRecord",
    "Span",
    "SpanRecord",
    "SpanStatus",
    "ErrorInfo",
]
