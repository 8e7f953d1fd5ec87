"""
Flush scheduling for the three exporter buffers.

Timers drive a periodic flush per buffer kind; ingest can request an
immediate one when a batch threshold is crossed. Each kind is serialized by
its own lock: a request while a flush is running is dropped, the next tick
catches up.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Sequence

from loguru import logger

from ..metrics import metrics_registry
from ..models import LogRecord, SpanRecord, to_document
from ..normalize import sort_by_bucket_keys
from .connection import ConnectionManager
from .dlq import DeadLetterQueue
from .policy import CircuitBreaker
from .queue import BoundedBuffer
from .tasks import BackgroundTasks
from .wal import WriteAheadLog


class FlushScheduler:
    def __init__(
        self,
        *,
        logs: BoundedBuffer[LogRecord],
        critical: BoundedBuffer[SpanRecord],
        normal: BoundedBuffer[SpanRecord],
        connection: ConnectionManager,
        breaker: CircuitBreaker,
        wal: WriteAheadLog,
        dlq: DeadLetterQueue,
        logs_collection: str,
        telemetry_collection: str,
        bucket_keys: Sequence[str],
        flush_interval: float = 15.0,
        usage_total: Optional[Callable[[Sequence[SpanRecord]], float]] = None,
        exporter_id: str = "default",
    ) -> None:
        self.logs = logs
        self.critical = critical
        self.normal = normal
        self.connection = connection
        self.breaker = breaker
        self.wal = wal
        self.dlq = dlq
        self.logs_collection = logs_collection
        self.telemetry_collection = telemetry_collection
        self.bucket_keys = list(bucket_keys)
        self.flush_interval = flush_interval
        self._usage_total = usage_total
        self._id = exporter_id

        self._logs_lock = asyncio.Lock()
        self._spans_lock = asyncio.Lock()
        self._requests = BackgroundTasks("flush-request")
        self._timers: list[asyncio.Task] = []
        self._logs_requested = False
        self._spans_requested = False

        self.critical_attempts = 0
        self.normal_skipped = 0

    # ---------- timers ----------

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._timers)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._timers = [
            loop.create_task(self._tick(self.flush_logs), name="flush-logs-timer"),
            loop.create_task(self._tick(self.flush_spans), name="flush-spans-timer"),
        ]
        logger.debug(f"Flush timers started (interval={self.flush_interval}s)")

    async def stop(self) -> None:
        timers, self._timers = self._timers, []
        for t in timers:
            t.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        await self._requests.wait()

    async def _tick(self, flush) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await flush()
            except Exception as exc:
                logger.error(f"Unexpected flush error: {type(exc).__name__}: {exc}")

    # ---------- threshold-triggered requests ----------

    @property
    def logs_in_flight(self) -> bool:
        return self._logs_lock.locked()

    @property
    def spans_in_flight(self) -> bool:
        return self._spans_lock.locked()

    def request_logs_flush(self) -> None:
        if self.logs_in_flight or self._logs_requested:
            return
        if self._requests.spawn(self._requested(self.flush_logs, "logs"), name="flush-logs"):
            self._logs_requested = True

    def request_spans_flush(self) -> None:
        if self.spans_in_flight or self._spans_requested:
            return
        if self._requests.spawn(self._requested(self.flush_spans, "spans"), name="flush-spans"):
            self._spans_requested = True

    async def _requested(self, flush, kind: str) -> None:
        setattr(self, f"_{kind}_requested", False)
        await flush()

    async def wait_requests(self) -> None:
        await self._requests.wait()

    # ---------- logs ----------

    async def flush_logs(self, *, wait: bool = False) -> None:
        """Write buffered logs. With ``wait`` an in-flight flush is awaited first."""
        if self._logs_lock.locked() and not wait:
            return
        async with self._logs_lock:
            if not len(self.logs):
                return
            if not self._connected("flush_logs"):
                self._count("logs", "failure")
                return

            batch = sort_by_bucket_keys(self.logs.drain(), self.bucket_keys)
            try:
                await self.connection.store.bulk_insert(
                    self.logs_collection, [to_document(r) for r in batch]
                )
            except asyncio.CancelledError:
                self.logs.requeue(batch, limit=self.logs.remaining)
                raise
            except Exception as exc:
                logger.error(f"Failed to flush {len(batch)} logs: {type(exc).__name__}: {exc}")
                self.breaker.record_failure()
                restored = self.logs.requeue(batch, limit=self.logs.remaining)
                if restored < len(batch):
                    logger.warning(f"Dropped {len(batch) - restored} logs past buffer capacity")
                self._count("logs", "failure")
                await self.connection.handle_error(exc, "flush_logs")
            else:
                self.breaker.record_success()
                self._count("logs", "success", len(batch))

    # ---------- spans ----------

    async def flush_spans(self, *, wait: bool = False) -> None:
        """Critical phase always, normal phase only when the breaker allows."""
        if self._spans_lock.locked() and not wait:
            return
        async with self._spans_lock:
            self.dlq.retry_stranded()
            if not len(self.critical) and not len(self.normal):
                return

            normal_allowed = self.breaker.can_execute()
            if not self._connected("flush_spans"):
                if len(self.critical):
                    self.critical_attempts += 1
                    self._count("critical", "failure")
                return

            if len(self.critical):
                await self._flush_critical()

            if not len(self.normal):
                return
            if normal_allowed and not self.breaker.is_open:
                await self._flush_normal()
            else:
                self.normal_skipped += 1
                logger.warning(
                    f"Circuit breaker OPEN - skipping normal telemetry flush "
                    f"(buffered={len(self.normal)})"
                )

    async def _flush_critical(self) -> None:
        batch = self.critical.drain()
        self.critical_attempts += 1
        try:
            await self.connection.store.bulk_insert(
                self.telemetry_collection, [to_document(r) for r in batch]
            )
        except asyncio.CancelledError:
            self.critical.requeue(batch)
            raise
        except Exception as exc:
            self.breaker.record_failure()
            # Never truncated: the whole batch goes back and the WAL still covers it.
            self.critical.requeue(batch)
            logger.error(
                f"CRITICAL: failed to flush {len(batch)} critical spans - data kept in WAL "
                f"(usage={self._usage(batch)}): {type(exc).__name__}: {exc}"
            )
            self._count("critical", "failure")
            await self.connection.handle_error(exc, "flush_spans")
        else:
            self.breaker.record_success()
            self.wal.reset(self.critical, pinned=lambda: self.dlq.pinned)
            self._count("critical", "success", len(batch))
            logger.info(f"Flushed {len(batch)} critical spans")

    async def _flush_normal(self) -> None:
        batch = self.normal.drain()
        try:
            await self.connection.store.bulk_insert(
                self.telemetry_collection, [to_document(r) for r in batch]
            )
        except asyncio.CancelledError:
            self.normal.requeue(batch, limit=self.normal.remaining)
            raise
        except Exception as exc:
            self.breaker.record_failure()
            logger.warning(f"Failed to flush {len(batch)} normal spans: {type(exc).__name__}: {exc}")
            self.normal.requeue(batch, limit=self.normal.remaining)
            self._count("normal", "failure")
            await self.connection.handle_error(exc, "flush_spans")
        else:
            self.breaker.record_success()
            self._count("normal", "success", len(batch))

    # ---------- helpers ----------

    def _connected(self, operation: str) -> bool:
        """False (and a breaker failure plus reconnect) while the backend is down."""
        if self.connection.connected:
            return True
        self.breaker.record_failure()
        self.connection.schedule_reconnect(operation)
        logger.warning(f"Backend not connected, keeping records buffered ({operation})")
        return False

    def _usage(self, batch: Sequence[SpanRecord]) -> float:
        return self._usage_total(batch) if self._usage_total else 0

    def _count(self, buffer: str, outcome: str, n: int = 0) -> None:
        metrics_registry.flush_total.labels(self._id, buffer, outcome).inc()
        if n:
            metrics_registry.flushed_records.labels(self._id, buffer).inc(n)
