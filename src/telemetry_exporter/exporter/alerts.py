"""
Health alert events.

The health reporter publishes an alert whenever a threshold is crossed.
Subscribers (paging hooks, dashboards, tests) register on the exporter's bus.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger


class AlertLevel(str, Enum):
    """Alert severity levels."""

    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class HealthAlert:
    """Immutable alert emitted by a health check.

    Attributes:
        exporter_id: Identifies the exporter instance
        name: Alert key (e.g., "critical_buffer_near_full", "circuit_open")
        level: Severity
        message: Human-readable description
        value: Observed value that triggered the alert (utilization, failures)
    """

    exporter_id: str
    name: str
    level: AlertLevel
    message: str
    value: float = 0.0


class AlertSubscriber(Protocol):
    async def __call__(self, alert: HealthAlert) -> None: ...


class AlertBus:
    """In-process pub/sub for health alerts with per-subscriber error isolation."""

    def __init__(self) -> None:
        self._subs: list[AlertSubscriber] = []

    def subscribe(self, callback: AlertSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Alert subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: AlertSubscriber) -> None:
        """No-op if ``callback`` was never subscribed."""
        try:
            self._subs.remove(callback)
        except ValueError:
            pass

    async def publish(self, alert: HealthAlert) -> None:
        for callback in list(self._subs):
            try:
                await callback(alert)
            except Exception as exc:
                logger.debug(f"Alert subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
