"""
Background writer for local journal files (WAL and DLQ).

Callers hand over operations without waiting; a single writer task applies
them in submission order, running the blocking file I/O in a worker thread.
Consecutive appends to the same file are coalesced into one write.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal, Optional

from loguru import logger

from .errors import JournalWriteError
from .policy import RetryPolicy

OpKind = Literal["append", "rewrite", "remove"]


@dataclass
class JournalOp:
    kind: OpKind
    path: Path
    lines: list[str] = field(default_factory=list)
    retry: Optional[RetryPolicy] = None
    # resolved when the op is applied; lets a rewrite pick up late arrivals
    extra_lines: Optional[Callable[[], list[str]]] = None
    on_success: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


def _append(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as fh:
        fh.write("".join(line + "\n" for line in lines))
        fh.flush()
        os.fsync(fh.fileno())


def _rewrite(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        fh.write("".join(line + "\n" for line in lines))
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def apply_op(op: JournalOp) -> None:
    """Apply one operation, retrying per its policy. Runs in a worker thread."""
    attempt = 1
    while True:
        try:
            if op.kind == "append":
                _append(op.path, op.lines)
            elif op.kind == "rewrite":
                _rewrite(op.path, op.lines)
            else:
                _remove(op.path)
            return
        except Exception as exc:
            policy = op.retry
            if policy is None or attempt >= policy.max_attempts or not policy.classify_retryable(exc):
                raise JournalWriteError(f"{op.kind} {op.path}: {exc}") from exc
            time.sleep(policy.next_backoff_ms(attempt) / 1000.0)
            attempt += 1


class JournalWriter:
    """Single consumer of journal operations.

    Example:
        writer = JournalWriter()
        writer.start()
        writer.submit(JournalOp("append", Path("wal.ndjson"), ['{"a": 1}']))
        await writer.drain()
    """

    def __init__(self) -> None:
        self._q: asyncio.Queue[JournalOp] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        # taken off the queue while coalescing but not part of that batch
        self._carry: Optional[JournalOp] = None
        self.failed_ops = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._q.qsize() + (1 if self._carry is not None else 0)

    def submit(self, op: JournalOp) -> None:
        """Enqueue an operation; never blocks or raises."""
        self._q.put_nowait(op)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="journal-writer"
        )
        logger.debug("Journal writer started")

    async def drain(self) -> None:
        """Wait until every submitted operation has been applied."""
        if self.running:
            await self._q.join()
            return
        # Not started (or stopped): apply the backlog from the caller's task.
        while self._carry is not None or not self._q.empty():
            await self._process(self._next_batch(self._take_nowait()))

    async def stop(self) -> None:
        await self.drain()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.debug("Journal writer stopped")

    async def _run(self) -> None:
        while True:
            first = self._take_nowait() if self._carry is not None else await self._q.get()
            await self._process(self._next_batch(first))

    def _next_batch(self, first: JournalOp) -> list[JournalOp]:
        batch = [first]
        if first.kind != "append":
            return batch
        while not self._q.empty():
            nxt = self._q.get_nowait()
            if nxt.kind != "append" or nxt.path != first.path or nxt.retry != first.retry:
                self._carry = nxt
                break
            batch.append(nxt)
        return batch

    def _take_nowait(self) -> JournalOp:
        if self._carry is not None:
            op, self._carry = self._carry, None
            return op
        return self._q.get_nowait()

    async def _process(self, batch: list[JournalOp]) -> None:
        head = batch[0]
        kind = head.kind
        lines = [line for op in batch for line in op.lines]
        if head.extra_lines is not None:
            lines += head.extra_lines()
            if kind == "remove" and lines:
                kind = "rewrite"
        merged = JournalOp(kind, head.path, lines, retry=head.retry)
        try:
            await asyncio.to_thread(apply_op, merged)
        except Exception as exc:
            self.failed_ops += len(batch)
            for op in batch:
                if op.on_error:
                    op.on_error(exc)
                else:
                    logger.error(f"Journal {op.kind} failed for {op.path}: {exc}")
        else:
            for op in batch:
                if op.on_success:
                    op.on_success()
        finally:
            for _ in batch:
                self._q.task_done()
