"""
TelemetryExporter: non-blocking ingest of logs and spans with durable
handling of critical (billing) spans.

Example:
    exporter = TelemetryExporter.from_settings(ExporterSettings())
    await exporter.initialize()

    exporter.export_log("info", "review started", {"component": "reviewer"})
    exporter.export_span({"name": "llm.call", "start_time": t0, "end_time": t1,
                          "attributes": {"gen_ai.usage.total_tokens": 812}})

    await exporter.dispose()
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from loguru import logger

from ..metrics import metrics_registry
from ..models import LogLevel, LogRecord, Span, SpanRecord
from ..normalize import build_log_record, build_span_record, coerce_span
from .alerts import AlertBus
from .connection import ConnectionManager
from .dlq import DeadLetterQueue
from .flush import FlushScheduler
from .health import BufferStats, ExporterMetrics, HealthReporter, HealthStatus, compute_alerts
from .journal import JournalWriter
from .policy import CircuitBreaker
from .queue import BoundedBuffer
from .settings import ExporterSettings
from .types import (
    BackendStore,
    CollectionOptions,
    CriticalityPredicate,
    IndexOptions,
    usage_attribute_predicate,
)
from .wal import WriteAheadLog

LOG_INDEX_FIELDS: tuple[str, ...] = ("correlation_id", "level")
TELEMETRY_INDEX_FIELDS: tuple[str, ...] = (
    "timestamp",
    "correlation_id",
    "tenant_id",
    "name",
    "agent_name",
    "tool_name",
    "phase",
)


async def provision(store: BackendStore, settings: ExporterSettings) -> int:
    """Create both collections and their secondary indexes.

    Collection errors propagate; index failures are logged and skipped.
    Returns the number of indexes ensured.
    """
    options = CollectionOptions(retention_days=settings.retention_days)
    await store.ensure_collection(settings.logs_collection, options)
    await store.ensure_collection(settings.telemetry_collection, options)

    created = 0
    for collection, fields in (
        (settings.logs_collection, (*LOG_INDEX_FIELDS, *settings.secondary_index_keys)),
        (settings.telemetry_collection, TELEMETRY_INDEX_FIELDS),
    ):
        for key in fields:
            try:
                await store.create_index(collection, [key], IndexOptions())
                created += 1
            except Exception as exc:
                logger.debug(f"Failed to create index {collection}.{key}: {exc}")
    logger.debug(f"Provisioned collections ({created} indexes ensured)")
    return created


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting-down"
    CLOSED = "closed"


class TelemetryExporter:
    """Buffers records in memory and writes them to a BackendStore in batches.

    Three buffers are kept: logs (drop oldest), critical spans (WAL on arrival,
    DLQ on overflow, never dropped) and normal spans (drop oldest, gated by the
    circuit breaker). Ingest methods are synchronous and never raise.
    """

    def __init__(
        self,
        store: BackendStore,
        settings: Optional[ExporterSettings] = None,
        *,
        is_critical: Optional[CriticalityPredicate] = None,
        exporter_id: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = s = settings or ExporterSettings()
        self.exporter_id = exporter_id
        self.is_critical = is_critical or usage_attribute_predicate(s.usage_attribute)
        self.state = LifecycleState.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._log = logger.bind(component="telemetry-exporter", exporter=exporter_id)

        self.logs: BoundedBuffer[LogRecord] = BoundedBuffer(
            s.max_buffer_size, on_drop=lambda items: self._dropped("logs", items)
        )
        self.critical: BoundedBuffer[SpanRecord] = BoundedBuffer(
            s.max_critical_buffer_size, overflow_strategy="evict", on_evict=self._relocate
        )
        self.normal: BoundedBuffer[SpanRecord] = BoundedBuffer(
            s.max_buffer_size, on_drop=lambda items: self._dropped("normal", items)
        )

        self.journal = JournalWriter()
        self.wal = WriteAheadLog(s.wal_path, self.journal, enabled=s.wal_enabled)
        self.dlq = DeadLetterQueue(s.dlq_path, self.journal, usage_attribute=s.usage_attribute)
        self.breaker = CircuitBreaker(
            s.failure_threshold, s.reset_timeout, s.success_threshold, clock=clock
        )
        self.connection = ConnectionManager(
            store, provision=self._provision, reconnect_delay=s.reconnect_delay, clock=clock
        )
        self.scheduler = FlushScheduler(
            logs=self.logs,
            critical=self.critical,
            normal=self.normal,
            connection=self.connection,
            breaker=self.breaker,
            wal=self.wal,
            dlq=self.dlq,
            logs_collection=s.logs_collection,
            telemetry_collection=s.telemetry_collection,
            bucket_keys=s.bucket_keys,
            flush_interval=s.flush_interval,
            usage_total=self.dlq.usage_total,
            exporter_id=exporter_id,
        )
        self.alerts = AlertBus()
        self.health = HealthReporter(
            self.get_health_status,
            interval=s.health_check_interval,
            bus=self.alerts,
            exporter_id=exporter_id,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ExporterSettings,
        store: Optional[BackendStore] = None,
        **kwargs: Any,
    ) -> "TelemetryExporter":
        """Build an exporter, backed by TimescaleStore unless ``store`` is given."""
        if store is None:
            from ..store import TimescaleStore

            store = TimescaleStore.from_settings(settings)
        return cls(store, settings, **kwargs)

    @property
    def store(self) -> BackendStore:
        return self.connection.store

    # ---------- ingest ----------

    def export_log(
        self,
        level: Union[LogLevel, str],
        message: str,
        context: Union[Mapping[str, Any], str, None] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if self.state is LifecycleState.CLOSED:
            self._log.debug("Exporter closed, log discarded")
            return
        try:
            record = build_log_record(level, message, context, error, self.settings.bucket_keys)
            self.logs.put(record)
            if len(self.logs) >= self.settings.batch_size:
                self._request(self.scheduler.request_logs_flush)
        except Exception as exc:
            self._log.error(f"Failed to export log: {type(exc).__name__}: {exc}")

    def export_error(
        self,
        error: BaseException,
        context: Union[Mapping[str, Any], str, None] = None,
        message: Optional[str] = None,
    ) -> None:
        text = message or str(error) or type(error).__name__
        self.export_log(LogLevel.ERROR, text, context, error)

    def export_span(self, span: Union[Span, Mapping[str, Any]]) -> None:
        """Route a finished span to the critical or normal buffer."""
        try:
            record = build_span_record(coerce_span(span), self.is_critical)
            if self.state is LifecycleState.CLOSED:
                self._discard_closed(record)
                return
            if record.critical:
                # WAL first: by the time the span can be evicted, its append is queued.
                self.wal.append(record)
                self.critical.put(record)
            else:
                self.normal.put(record)
            if len(self.critical) + len(self.normal) >= self.settings.batch_size:
                self._request(self.scheduler.request_spans_flush)
        except Exception as exc:
            self._log.error(f"Failed to export span: {type(exc).__name__}: {exc}")

    def export_spans(self, spans: Sequence[Union[Span, Mapping[str, Any]]]) -> None:
        for span in spans:
            self.export_span(span)

    def _discard_closed(self, record: SpanRecord) -> None:
        if record.critical:
            self._log.error(
                f"Exporter closed, critical span discarded (name={record.name} "
                f"correlation_id={record.correlation_id} "
                f"usage={self.dlq.usage_total([record])})"
            )
        else:
            self._log.debug("Exporter closed, span discarded")

    def _request(self, request: Callable[[], None]) -> None:
        if self.state is LifecycleState.READY:
            request()

    def _relocate(self, evicted: list[SpanRecord]) -> None:
        self.dlq.save(evicted)
        metrics_registry.dlq_records.labels(self.exporter_id).inc(len(evicted))

    def _dropped(self, buffer: str, items: list) -> None:
        metrics_registry.dropped_records.labels(self.exporter_id, buffer).inc(len(items))
        self._log.debug(f"Dropped {len(items)} oldest {buffer} records (buffer full)")

    # ---------- lifecycle ----------

    async def initialize(self) -> None:
        """Connect, provision, replay the WAL and start background work. Idempotent."""
        async with self._init_lock:
            if self.state is not LifecycleState.UNINITIALIZED:
                return
            self.state = LifecycleState.INITIALIZING
            try:
                await self.connection.open()
            except Exception as exc:
                self.state = LifecycleState.UNINITIALIZED
                self._log.error(
                    f"Failed to initialize telemetry exporter: {type(exc).__name__}: {exc}"
                )
                raise

            await self._recover_wal()
            self.journal.start()
            self.scheduler.start()
            self.health.start()
            self.state = LifecycleState.READY
            self._log.info(
                f"Telemetry exporter initialized (logs={self.settings.logs_collection} "
                f"telemetry={self.settings.telemetry_collection} "
                f"batch_size={self.settings.batch_size} "
                f"flush_interval={self.settings.flush_interval}s)"
            )

    async def _provision(self) -> None:
        await provision(self.store, self.settings)

    async def _recover_wal(self) -> None:
        recovered = await asyncio.to_thread(self.wal.replay)
        if not recovered:
            return
        buffered = {(r.correlation_id, r.name, r.start_time) for r in self.critical}
        fresh = [r for r in recovered if (r.correlation_id, r.name, r.start_time) not in buffered]
        overflow = min(len(fresh), len(fresh) + len(self.critical) - self.critical.capacity)
        if overflow > 0:
            # oldest recovered spans go to the DLQ, same as an overflowing put
            self._relocate(fresh[:overflow])
            fresh = fresh[overflow:]
        self.critical.requeue(fresh)
        self._log.warning(
            f"Recovered {len(fresh)} critical spans from WAL {self.wal.path} "
            f"({max(0, overflow)} over capacity moved to DLQ)"
        )

    async def flush(self) -> None:
        """Flush every buffer now, waiting for any flush already running."""
        await asyncio.gather(
            self.scheduler.flush_logs(wait=True),
            self.scheduler.flush_spans(wait=True),
        )

    async def dispose(self) -> None:
        """Stop timers, run one bounded final flush and close the backend."""
        if self.state in (LifecycleState.SHUTTING_DOWN, LifecycleState.CLOSED):
            return
        self.state = LifecycleState.SHUTTING_DOWN
        s = self.settings
        self._log.info(
            f"Graceful shutdown initiated (logs={len(self.logs)} critical={len(self.critical)} "
            f"normal={len(self.normal)} circuit={self.breaker.state.value})"
        )

        await self.health.stop()
        await self.scheduler.stop()

        with self.breaker.force_closed():
            try:
                await asyncio.wait_for(self._final_flush(), timeout=s.shutdown_timeout)
            except Exception as exc:
                self._log.error(f"Final flush error: {type(exc).__name__}: {exc}")

        await self.connection.close()
        # Spans accepted up to here still get their WAL append applied by the drain.
        self.state = LifecycleState.CLOSED
        await self.journal.stop()

        lost = (len(self.logs), len(self.critical), len(self.normal))
        if any(lost):
            self._log.critical(
                f"CRITICAL: failed to flush buffers during shutdown - DATA MAY BE LOST "
                f"(logs={lost[0]} critical={lost[1]} normal={lost[2]}; "
                f"critical spans remain in WAL {self.wal.path})"
            )
        else:
            self._log.info("All buffers flushed during shutdown")
        self._log.info("Graceful shutdown completed")

    async def shutdown(self) -> None:
        await self.dispose()

    async def _final_flush(self) -> None:
        if not self.connection.connected:
            await self.connection.wait_reconnect()
        if not self.connection.connected:
            await self.connection.open()
        await self.flush()

    async def __aenter__(self) -> "TelemetryExporter":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    # ---------- observability ----------

    def get_health_status(self) -> HealthStatus:
        logs = BufferStats(len(self.logs), self.logs.capacity)
        critical = BufferStats(len(self.critical), self.critical.capacity)
        normal = BufferStats(len(self.normal), self.normal.capacity)
        circuit = self.breaker.state.value
        return HealthStatus(
            state=self.state.value,
            connected=self.connection.connected,
            circuit_state=circuit,
            failure_count=self.breaker.failure_count,
            logs=logs,
            critical=critical,
            normal=normal,
            dlq_stranded=len(self.dlq.stranded),
            alerts=tuple(
                compute_alerts(
                    self.exporter_id,
                    circuit_state=circuit,
                    failure_count=self.breaker.failure_count,
                    critical=critical,
                    normal=normal,
                )
            ),
        )

    def get_metrics(self) -> ExporterMetrics:
        return ExporterMetrics(
            logs_buffered=len(self.logs),
            critical_telemetry_buffered=len(self.critical),
            normal_telemetry_buffered=len(self.normal),
            circuit_state=self.breaker.state.value,
            failure_count=self.breaker.failure_count,
            connected=self.connection.connected,
            reconnect_attempts=self.connection.reconnect_attempts,
            critical_flush_attempts=self.scheduler.critical_attempts,
            normal_flush_skipped=self.scheduler.normal_skipped,
            logs_dropped=self.logs.dropped_total,
            normal_telemetry_dropped=self.normal.dropped_total,
            dlq_written=self.dlq.written_total,
            dlq_stranded=len(self.dlq.stranded),
            wal_append_failures=self.wal.append_failures,
            journal_pending=self.journal.pending,
        )
