"""
Health snapshots, threshold alerts and the periodic health check.

Purely observational: nothing here changes buffers, breaker or connection.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from ..metrics import CIRCUIT_STATE_VALUES, metrics_registry
from .alerts import AlertBus, AlertLevel, HealthAlert

CRITICAL_BUFFER_WARN = 0.80
CRITICAL_BUFFER_PAGE = 0.95
NORMAL_BUFFER_WARN = 0.80
CONSECUTIVE_FAILURES_WARN = 3


@dataclass(frozen=True)
class BufferStats:
    size: int
    capacity: int

    @property
    def utilization(self) -> float:
        """Occupancy as a fraction (0.0 to 1.0)."""
        return self.size / self.capacity if self.capacity > 0 else 0.0


@dataclass(frozen=True)
class HealthStatus:
    """Point-in-time view returned by ``TelemetryExporter.get_health_status()``."""

    state: str
    connected: bool
    circuit_state: str
    failure_count: int
    logs: BufferStats
    critical: BufferStats
    normal: BufferStats
    dlq_stranded: int = 0
    alerts: tuple[HealthAlert, ...] = field(default_factory=tuple)

    @property
    def healthy(self) -> bool:
        return (
            self.state == "ready"
            and self.connected
            and self.circuit_state != "open"
            and not any(a.level == AlertLevel.CRITICAL for a in self.alerts)
        )


@dataclass(frozen=True)
class ExporterMetrics:
    """Counters snapshot returned by ``TelemetryExporter.get_metrics()``."""

    logs_buffered: int
    critical_telemetry_buffered: int
    normal_telemetry_buffered: int
    circuit_state: str
    failure_count: int
    connected: bool
    reconnect_attempts: int
    critical_flush_attempts: int
    normal_flush_skipped: int
    logs_dropped: int
    normal_telemetry_dropped: int
    dlq_written: int
    dlq_stranded: int
    wal_append_failures: int
    journal_pending: int


def compute_alerts(
    exporter_id: str,
    *,
    circuit_state: str,
    failure_count: int,
    critical: BufferStats,
    normal: BufferStats,
) -> list[HealthAlert]:
    alerts: list[HealthAlert] = []
    if circuit_state == "open":
        alerts.append(
            HealthAlert(
                exporter_id,
                "circuit_open",
                AlertLevel.CRITICAL,
                "Circuit breaker is OPEN - normal telemetry is not being written",
                float(failure_count),
            )
        )

    util = critical.utilization
    if util >= CRITICAL_BUFFER_PAGE:
        alerts.append(
            HealthAlert(
                exporter_id,
                "critical_buffer_full",
                AlertLevel.CRITICAL,
                f"Critical buffer at {util:.0%} ({critical.size}/{critical.capacity}) - "
                f"DLQ overflow imminent",
                util,
            )
        )
    elif util >= CRITICAL_BUFFER_WARN:
        alerts.append(
            HealthAlert(
                exporter_id,
                "critical_buffer_high",
                AlertLevel.WARNING,
                f"Critical buffer at {util:.0%} ({critical.size}/{critical.capacity})",
                util,
            )
        )

    if normal.utilization >= NORMAL_BUFFER_WARN:
        alerts.append(
            HealthAlert(
                exporter_id,
                "normal_buffer_high",
                AlertLevel.WARNING,
                f"Normal telemetry buffer at {normal.utilization:.0%} "
                f"({normal.size}/{normal.capacity}) - oldest spans will be dropped",
                normal.utilization,
            )
        )

    if failure_count >= CONSECUTIVE_FAILURES_WARN:
        alerts.append(
            HealthAlert(
                exporter_id,
                "consecutive_failures",
                AlertLevel.WARNING,
                f"{failure_count} consecutive backend write failures",
                float(failure_count),
            )
        )
    return alerts


class HealthReporter:
    """Runs ``check()`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        status: Callable[[], HealthStatus],
        *,
        interval: float = 30.0,
        bus: Optional[AlertBus] = None,
        exporter_id: str = "default",
    ) -> None:
        self._status = status
        self.interval = interval
        self.bus = bus or AlertBus()
        self._id = exporter_id
        self._task: Optional[asyncio.Task] = None
        self.checks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="health-check")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as exc:
                logger.error(f"Health check failed: {type(exc).__name__}: {exc}")

    async def check(self) -> HealthStatus:
        """Take a snapshot, export gauges, log and publish its alerts."""
        status = self._status()
        self.checks += 1
        self._export(status)

        for alert in status.alerts:
            if alert.level == AlertLevel.CRITICAL:
                logger.error(f"ALERT [{alert.name}] {alert.message}")
            else:
                logger.warning(f"ALERT [{alert.name}] {alert.message}")
            await self.bus.publish(alert)

        if not status.alerts:
            logger.debug(
                f"Health ok: circuit={status.circuit_state} "
                f"critical={status.critical.size}/{status.critical.capacity} "
                f"normal={status.normal.size}/{status.normal.capacity}"
            )
        return status

    def _export(self, status: HealthStatus) -> None:
        metrics_registry.buffered.labels(self._id, "logs").set(status.logs.size)
        metrics_registry.buffered.labels(self._id, "critical").set(status.critical.size)
        metrics_registry.buffered.labels(self._id, "normal").set(status.normal.size)
        metrics_registry.circuit_state.labels(self._id).set(
            CIRCUIT_STATE_VALUES.get(status.circuit_state, 0)
        )
