"""
Behavioural tests for TelemetryExporter: durability of critical spans,
breaker gating, overflow handling, recovery and shutdown.
"""

import asyncio

import pytest

from telemetry_exporter.exporter import (
    CircuitState,
    LifecycleState,
    StoreConnectionError,
    StoreDataError,
)
from telemetry_exporter.exporter.dlq import read_dlq
from telemetry_exporter.exporter.journal import JournalWriter
from telemetry_exporter.exporter.wal import WriteAheadLog
from telemetry_exporter.models import Span
from telemetry_exporter.normalize import build_span_record

LOGS = "observability_logs"
TELEMETRY = "observability_telemetry"


def wal_records(exporter):
    return WriteAheadLog(exporter.settings.wal_path, JournalWriter()).replay()


def names(records):
    return [r.name for r in records]


# ---------- ingest ----------


@pytest.mark.asyncio
async def test_critical_span_routed_by_usage_attribute(make_exporter, span):
    exporter = make_exporter()
    exporter.export_span(span("billable", usage=42))
    exporter.export_span(span("plain"))

    m = exporter.get_metrics()
    assert m.critical_telemetry_buffered == 1
    assert m.normal_telemetry_buffered == 1


@pytest.mark.asyncio
async def test_custom_criticality_predicate(store, settings, clock, span):
    from telemetry_exporter.exporter import TelemetryExporter

    exporter = TelemetryExporter(
        store, settings, clock=clock, is_critical=lambda attrs: attrs.get("tier") == "gold"
    )
    exporter.export_span(span("a", usage=100))
    exporter.export_span(span("b", tier="gold"))

    assert names(exporter.critical) == ["b"]
    assert names(exporter.normal) == ["a"]


@pytest.mark.asyncio
async def test_ingest_never_raises(make_exporter):
    exporter = make_exporter()
    exporter.export_log("verbose", "bad level")
    exporter.export_span({"start_time": "not-a-number"})
    exporter.export_error(RuntimeError("boom"), {"component": "api"})

    assert len(exporter.logs) == 1
    assert exporter.logs.drain()[0].error.name == "RuntimeError"


@pytest.mark.asyncio
async def test_log_buffer_keeps_most_recent(make_exporter):
    exporter = make_exporter()
    cap = exporter.settings.max_buffer_size
    for i in range(cap + 30):
        exporter.export_log("info", f"m{i}", "api")

    kept = [r.message for r in exporter.logs]
    assert kept == [f"m{i}" for i in range(30, cap + 30)]
    assert exporter.get_metrics().logs_dropped == 30


@pytest.mark.asyncio
async def test_critical_overflow_goes_to_dlq(make_exporter, span):
    exporter = make_exporter()
    k = exporter.settings.max_critical_buffer_size
    m = 3
    for i in range(k + m):
        exporter.export_span(span(f"s{i}", usage=i + 1))
    await exporter.journal.drain()

    in_dlq = [e.record for e in read_dlq(exporter.settings.dlq_path)]
    assert names(in_dlq) == [f"s{i}" for i in range(m)]
    assert len(exporter.critical) == k
    assert len(in_dlq) + len(exporter.critical) == k + m
    assert exporter.get_metrics().dlq_written == m
    # Every span was journalled before it could be evicted.
    assert len(wal_records(exporter)) == k + m


# ---------- flushing ----------


@pytest.mark.asyncio
async def test_failed_critical_flush_loses_nothing(make_exporter, store, span):
    exporter = make_exporter()
    await exporter.initialize()
    n = 7
    for i in range(n):
        exporter.export_span(span(f"c{i}", usage=1))

    store.fail_with = StoreDataError("rejected")
    await exporter.scheduler.flush_spans()
    await exporter.journal.drain()

    expected = [f"c{i}" for i in range(n)]
    assert names(exporter.critical) == expected
    assert names(wal_records(exporter)) == expected
    assert store.docs(TELEMETRY) == []

    store.fail_with = None
    await exporter.dispose()


@pytest.mark.asyncio
async def test_successful_critical_flush_clears_wal(make_exporter, store, span):
    exporter = make_exporter()
    await exporter.initialize()
    for i in range(4):
        exporter.export_span(span(f"c{i}", usage=5))

    await exporter.flush()
    await exporter.journal.drain()

    assert len(exporter.critical) == 0
    assert not exporter.settings.wal_path.exists()
    assert [d["name"] for d in store.docs(TELEMETRY)] == ["c0", "c1", "c2", "c3"]
    assert all(d["critical"] for d in store.docs(TELEMETRY))
    await exporter.dispose()


@pytest.mark.asyncio
async def test_flush_logs_writes_sorted_batch(make_exporter, store):
    exporter = make_exporter()
    await exporter.initialize()
    exporter.export_log("info", "b", {"component": "beta"})
    exporter.export_log("info", "a", {"component": "alpha"})
    exporter.export_log("warn", "a2", {"component": "alpha"})

    await exporter.scheduler.flush_logs()

    docs = store.docs(LOGS)
    assert [d["message"] for d in docs] == ["a", "a2", "b"]
    assert docs[0]["metadata"]["tenantId"] == "unknown"
    assert len(exporter.logs) == 0
    await exporter.dispose()


@pytest.mark.asyncio
async def test_failed_log_flush_requeues_within_capacity(make_exporter, store):
    exporter = make_exporter(max_buffer_size=5)
    await exporter.initialize()
    for i in range(5):
        exporter.export_log("info", f"old{i}", "api")

    store.fail_with = StoreDataError("rejected")
    await exporter.scheduler.flush_logs()
    assert [r.message for r in exporter.logs] == [f"old{i}" for i in range(5)]

    # New arrivals while a failed batch is restored: most recent of the batch win.
    batch = exporter.logs.drain()
    exporter.export_log("info", "new0", "api")
    exporter.export_log("info", "new1", "api")
    exporter.logs.requeue(batch, limit=exporter.logs.remaining)
    assert [r.message for r in exporter.logs] == ["old2", "old3", "old4", "new0", "new1"]

    store.fail_with = None
    await exporter.dispose()


@pytest.mark.asyncio
async def test_batch_threshold_triggers_flush(make_exporter, store, span):
    exporter = make_exporter(batch_size=3)
    await exporter.initialize()
    for i in range(3):
        exporter.export_log("info", f"m{i}", "api")
    for i in range(3):
        exporter.export_span(span(f"s{i}"))

    await exporter.scheduler.wait_requests()

    assert len(store.docs(LOGS)) == 3
    assert len(store.docs(TELEMETRY)) == 3
    await exporter.dispose()


@pytest.mark.asyncio
async def test_concurrent_flush_request_is_noop(make_exporter, store):
    exporter = make_exporter()
    await exporter.initialize()
    gate = asyncio.Event()
    original = store.bulk_insert

    async def slow_insert(collection, records):
        await gate.wait()
        return await original(collection, records)

    store.bulk_insert = slow_insert
    exporter.export_log("info", "m", "api")

    first = asyncio.create_task(exporter.scheduler.flush_logs())
    await asyncio.sleep(0)
    assert exporter.scheduler.logs_in_flight

    await exporter.scheduler.flush_logs()  # returns immediately
    assert len(store.insert_calls) == 0

    gate.set()
    await first
    assert len(store.docs(LOGS)) == 1
    await exporter.dispose()


@pytest.mark.asyncio
async def test_failed_normal_flush_keeps_most_recent_within_capacity(make_exporter, store, span):
    exporter = make_exporter()
    await exporter.initialize()
    for i in range(80):
        exporter.export_span(span(f"old{i}"))
    original = store.bulk_insert

    async def failing_insert(collection, records):
        # newer spans arrive while the batch is out
        for i in range(40):
            exporter.export_span(span(f"new{i}"))
        raise StoreDataError("rejected")

    store.bulk_insert = failing_insert
    await exporter.scheduler.flush_spans()

    kept = names(exporter.normal)
    assert len(kept) == exporter.normal.capacity
    assert kept[0] == "old20"
    assert kept[59] == "old79"
    assert kept[60:] == [f"new{i}" for i in range(40)]
    assert exporter.get_metrics().normal_telemetry_dropped == 20
    assert len(exporter.critical) == 0
    store.bulk_insert = original
    await exporter.dispose()


# ---------- circuit breaker ----------


@pytest.mark.asyncio
async def test_consecutive_failures_open_circuit(make_exporter, store):
    exporter = make_exporter()
    await exporter.initialize()
    exporter.export_log("error", "x", "api")
    store.fail_with = StoreDataError("rejected")

    for _ in range(5):
        await exporter.scheduler.flush_logs()

    assert exporter.get_metrics().circuit_state == "open"
    store.fail_with = None
    await exporter.dispose()


@pytest.mark.asyncio
async def test_critical_flush_attempted_while_circuit_open(make_exporter, store, span):
    exporter = make_exporter()
    await exporter.initialize()
    exporter.export_span(span("crit", usage=9))
    exporter.export_span(span("normal"))
    store.fail_with = StoreDataError("rejected")

    ticks = 8
    for _ in range(ticks):
        await exporter.scheduler.flush_spans()

    assert exporter.breaker.state is CircuitState.OPEN
    assert exporter.get_metrics().critical_flush_attempts == ticks
    # Only single-span critical batches after the breaker opened.
    critical_calls = [c for c in store.insert_calls if c == (TELEMETRY, 1)]
    assert len(critical_calls) >= ticks
    assert names(exporter.critical) == ["crit"]
    assert names(exporter.normal) == ["normal"]
    assert exporter.get_metrics().normal_flush_skipped > 0

    store.fail_with = None
    await exporter.dispose()


@pytest.mark.asyncio
async def test_normal_phase_resumes_after_reset_timeout(make_exporter, store, clock, span):
    exporter = make_exporter()
    await exporter.initialize()
    store.fail_with = StoreDataError("rejected")
    exporter.export_log("info", "x", "api")
    for _ in range(5):
        await exporter.scheduler.flush_logs()
    assert exporter.breaker.is_open

    store.fail_with = None
    exporter.export_span(span("n1"))
    await exporter.scheduler.flush_spans()
    assert names(exporter.normal) == ["n1"]

    clock.advance(exporter.settings.reset_timeout + 1)
    await exporter.scheduler.flush_spans()
    assert len(exporter.normal) == 0
    assert exporter.breaker.state is CircuitState.HALF_OPEN

    exporter.export_span(span("n2"))
    await exporter.scheduler.flush_spans()
    assert exporter.breaker.state is CircuitState.CLOSED
    assert [d["name"] for d in store.docs(TELEMETRY)] == ["n1", "n2"]
    await exporter.dispose()


# ---------- connection handling ----------


@pytest.mark.asyncio
async def test_connection_error_schedules_reconnect(make_exporter, store):
    exporter = make_exporter()
    await exporter.initialize()
    exporter.export_log("info", "m", "api")

    store.fail_with = StoreConnectionError("connection reset by peer")
    await exporter.scheduler.flush_logs()
    store.fail_with = None

    await exporter.connection.wait_reconnect()
    assert store.connect_calls == 2
    assert exporter.connection.connected
    assert exporter.get_metrics().reconnect_attempts == 1
    assert len(exporter.logs) == 1

    await exporter.scheduler.flush_logs()
    assert len(store.docs(LOGS)) == 1
    await exporter.dispose()


@pytest.mark.asyncio
async def test_flush_while_disconnected_keeps_records(make_exporter, store, span):
    exporter = make_exporter()
    exporter.export_span(span("c", usage=1))
    exporter.export_log("info", "m", "api")

    await exporter.scheduler.flush_spans()
    await exporter.scheduler.flush_logs()

    assert store.insert_calls == []
    assert len(exporter.critical) == 1
    assert len(exporter.logs) == 1
    assert exporter.breaker.failure_count == 2

    await exporter.connection.wait_reconnect()
    assert exporter.connection.connected


# ---------- lifecycle ----------


@pytest.mark.asyncio
async def test_initialize_is_idempotent_and_provisions(make_exporter, store):
    exporter = make_exporter(retention_days=14)
    await exporter.initialize()
    await exporter.initialize()

    assert exporter.state is LifecycleState.READY
    assert store.connect_calls == 1
    assert set(store.ensured) == {LOGS, TELEMETRY}
    assert store.ensured[LOGS].retention_days == 14
    assert (LOGS, ("metadata.component",)) in store.indexes
    assert (TELEMETRY, ("agent_name",)) in store.indexes
    await exporter.dispose()


@pytest.mark.asyncio
async def test_index_failures_do_not_block_initialize(make_exporter, store):
    store.fail_index = True
    exporter = make_exporter()
    await exporter.initialize()
    assert exporter.state is LifecycleState.READY
    await exporter.dispose()


@pytest.mark.asyncio
async def test_initialize_connect_failure_raises(make_exporter, store):
    store.fail_connect = StoreConnectionError("connection refused")
    exporter = make_exporter()

    with pytest.raises(StoreConnectionError):
        await exporter.initialize()
    assert exporter.state is LifecycleState.UNINITIALIZED


@pytest.mark.asyncio
async def test_wal_replayed_on_startup(make_exporter, settings):
    writer = JournalWriter()
    wal = WriteAheadLog(settings.wal_path, writer)
    spans = [
        build_span_record(
            Span(name=f"w{i}", start_time=1000.0 + i, end_time=1010.0 + i, attributes={"u": 1}),
            lambda a: True,
        )
        for i in range(4)
    ]
    for r in spans:
        wal.append(r)
    await writer.drain()
    with open(settings.wal_path, "a", encoding="utf-8") as fh:
        fh.write("{corrupt\n")

    exporter = make_exporter()
    await exporter.initialize()

    assert list(exporter.critical) == spans
    await exporter.dispose()


@pytest.mark.asyncio
async def test_wal_replay_over_capacity_moves_oldest_to_dlq(make_exporter, settings):
    writer = JournalWriter()
    wal = WriteAheadLog(settings.wal_path, writer)
    k = settings.max_critical_buffer_size
    spans = [
        build_span_record(
            Span(name=f"w{i}", start_time=1000.0 + i, end_time=1010.0 + i, attributes={"u": 1}),
            lambda a: True,
        )
        for i in range(k + 3)
    ]
    for r in spans:
        wal.append(r)
    await writer.drain()

    exporter = make_exporter()
    await exporter.initialize()
    await exporter.journal.drain()

    assert len(exporter.critical) == k
    assert list(exporter.critical) == spans[3:]
    assert [e.record for e in read_dlq(settings.dlq_path)] == spans[:3]
    await exporter.dispose()

@pytest.mark.asyncio
async def test_dispose_flushes_critical_and_clears_wal(make_exporter, store, span):
    exporter = make_exporter()
    await exporter.initialize()
    store.fail_with = StoreDataError("rejected")
    for i in range(3):
        exporter.export_span(span(f"c{i}", usage=3))
    await exporter.scheduler.flush_spans()
    assert len(exporter.critical) == 3

    store.fail_with = None
    await exporter.dispose()

    assert exporter.get_metrics().critical_telemetry_buffered == 0
    assert not exporter.settings.wal_path.exists()
    assert exporter.state is LifecycleState.CLOSED
    assert len(store.docs(TELEMETRY)) == 3


@pytest.mark.asyncio
async def test_dispose_restores_breaker_state(make_exporter, store):
    exporter = make_exporter()
    await exporter.initialize()
    store.fail_with = StoreDataError("rejected")
    exporter.export_log("info", "x", "api")
    for _ in range(5):
        await exporter.scheduler.flush_logs()

    await exporter.shutdown()

    assert exporter.breaker.state is CircuitState.OPEN
    assert len(exporter.logs) == 1


@pytest.mark.asyncio
async def test_exports_after_close_are_discarded(make_exporter, span, log_messages):
    exporter = make_exporter()
    await exporter.initialize()
    await exporter.dispose()

    exporter.export_log("info", "late", "api")
    exporter.export_span(span("late-critical", usage=7))
    assert len(exporter.logs) == 0
    assert len(exporter.critical) == 0
    assert any("critical span discarded" in m for m in log_messages)


@pytest.mark.asyncio
async def test_dispose_bounded_when_backend_hangs(make_exporter, store, span, log_messages):
    exporter = make_exporter(shutdown_timeout_ms=100)
    await exporter.initialize()
    exporter.export_log("info", "pending", "api")
    exporter.export_span(span("c0", usage=2))
    exporter.export_span(span("c1", usage=2))

    async def hanging_insert(collection, records):
        await asyncio.sleep(30)

    store.bulk_insert = hanging_insert
    loop = asyncio.get_running_loop()
    started = loop.time()
    await exporter.dispose()

    assert loop.time() - started < 2.0
    assert exporter.state is LifecycleState.CLOSED
    assert not store.connected
    assert len(exporter.critical) == 2
    assert names(wal_records(exporter)) == ["c0", "c1"]
    lost = [m for m in log_messages if "DATA MAY BE LOST" in m]
    assert lost and "logs=1 critical=2 normal=0" in lost[0]


@pytest.mark.asyncio
async def test_critical_span_during_backend_close_reaches_wal(
    make_exporter, store, span, log_messages
):
    exporter = make_exporter()
    await exporter.initialize()
    original_close = store.close

    async def close_and_export():
        exporter.export_span(span("late", usage=5))
        await original_close()

    store.close = close_and_export
    await exporter.dispose()

    assert exporter.state is LifecycleState.CLOSED
    assert names(exporter.critical) == ["late"]
    assert names(wal_records(exporter)) == ["late"]
    assert any("critical=1" in m for m in log_messages if "DATA MAY BE LOST" in m)

@pytest.mark.asyncio
async def test_stranded_dlq_spans_stay_in_wal(make_exporter, settings, store, span):
    blocked = settings.dlq_path
    blocked.mkdir()
    exporter = make_exporter()
    await exporter.initialize()
    k = exporter.settings.max_critical_buffer_size
    for i in range(k + 1):
        exporter.export_span(span(f"s{i}", usage=1))
    await exporter.journal.drain()
    assert names(exporter.dlq.stranded) == ["s0"]

    await exporter.scheduler.flush_spans()
    await exporter.journal.drain()
    assert names(wal_records(exporter)) == ["s0"]

    blocked.rmdir()
    await exporter.scheduler.flush_spans()
    await exporter.journal.drain()
    assert names(e.record for e in read_dlq(blocked)) == ["s0"]
    assert exporter.dlq.stranded == []
    await exporter.dispose()


# ---------- health ----------


@pytest.mark.asyncio
async def test_health_alerts_and_bus(make_exporter, store, span):
    exporter = make_exporter()
    received = []

    async def on_alert(alert):
        received.append(alert.name)

    exporter.alerts.subscribe(on_alert)
    for i in range(9):
        exporter.export_span(span(f"s{i}", usage=1))

    status = await exporter.health.check()
    assert [a.name for a in status.alerts] == ["critical_buffer_high"]
    assert received == ["critical_buffer_high"]

    exporter.export_span(span("s9", usage=1))
    for _ in range(3):
        exporter.breaker.record_failure()
    status = exporter.get_health_status()
    assert {a.name for a in status.alerts} == {"critical_buffer_full", "consecutive_failures"}
    assert not status.healthy


@pytest.mark.asyncio
async def test_health_status_when_ready(make_exporter):
    exporter = make_exporter()
    await exporter.initialize()
    status = exporter.get_health_status()
    assert status.healthy
    assert status.state == "ready"
    assert status.circuit_state == "closed"
    assert status.alerts == ()
    await exporter.dispose()
