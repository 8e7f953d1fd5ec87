"""
Dead letter queue for critical spans evicted from a full buffer.

File-based NDJSON, one DLQRecord per span. This is the last-resort valve:
spans land here only when the in-memory critical buffer is at its hard cap.
Writes retry with backoff; spans whose write still fails are kept as
*stranded* and retried on every flush tick. Until a batch is confirmed in the
DLQ file (in flight or stranded) it is pinned into every WAL rewrite.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from ..models import SpanRecord
from ..utils import iter_ndjson_lines, utc_now
from .journal import JournalOp, JournalWriter
from .policy import RetryPolicy


class DLQRecord(BaseModel):
    reason: str
    evicted_at: datetime = Field(default_factory=utc_now)
    record: SpanRecord


class DeadLetterQueue:
    def __init__(
        self,
        path: Union[str, Path],
        writer: JournalWriter,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        usage_attribute: str | None = None,
    ):
        self.path = Path(path)
        self._writer = writer
        self._retry = retry_policy or RetryPolicy(max_attempts=3, initial_backoff_ms=50)
        self._usage_attribute = usage_attribute
        self._stranded: list[SpanRecord] = []
        self._in_flight: dict[int, list[SpanRecord]] = {}
        self._seq = 0
        self.written_total = 0

    @property
    def stranded(self) -> list[SpanRecord]:
        """Evicted spans whose DLQ write failed; resubmitted on the next flush."""
        return list(self._stranded)

    @property
    def pinned(self) -> list[SpanRecord]:
        """Spans not yet confirmed in the DLQ file: in flight plus stranded."""
        in_flight = [r for batch in self._in_flight.values() for r in batch]
        return in_flight + self._stranded

    def save(self, records: Sequence[SpanRecord], reason: str = "critical_buffer_overflow") -> None:
        """Queue evicted spans for append. Fire-and-forget."""
        if not records:
            return
        batch = list(records)
        lines = [DLQRecord(reason=reason, record=r).model_dump_json() for r in batch]
        self._seq += 1
        key = self._seq
        self._in_flight[key] = batch

        def _ok() -> None:
            self._in_flight.pop(key, None)
            self.written_total += len(batch)
            logger.error(
                f"CRITICAL: buffer overflow - {len(batch)} spans moved to dead letter queue "
                f"{self.path} (usage={self.usage_total(batch)})"
            )

        def _failed(exc: Exception) -> None:
            self._in_flight.pop(key, None)
            self._stranded.extend(batch)
            logger.critical(
                f"CATASTROPHIC: failed to write {len(batch)} spans to DLQ {self.path}: {exc}; "
                f"holding {len(self._stranded)} stranded spans for retry"
            )

        self._writer.submit(
            JournalOp("append", self.path, lines, retry=self._retry, on_success=_ok, on_error=_failed)
        )

    def retry_stranded(self) -> int:
        """Resubmit stranded spans. Returns how many were resubmitted."""
        if not self._stranded:
            return 0
        batch, self._stranded = self._stranded, []
        logger.warning(f"Retrying DLQ write for {len(batch)} stranded spans")
        self.save(batch, reason="critical_buffer_overflow_retry")
        return len(batch)

    def read(self, max_records: int | None = None) -> list[DLQRecord]:
        return read_dlq(self.path, max_records)

    def usage_total(self, batch: Sequence[SpanRecord]) -> float:
        """Sum of the usage attribute over ``batch`` (0 when unset)."""
        if not self._usage_attribute:
            return 0
        total = 0.0
        for r in batch:
            value = r.attributes.get(self._usage_attribute)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                total += value
        return total


def read_dlq(path: Union[str, Path], max_records: int | None = None) -> list[DLQRecord]:
    """Read DLQ entries back (oldest first); malformed lines are skipped."""
    path = Path(path)
    if not path.exists():
        return []
    out: list[DLQRecord] = []
    for lineno, line in iter_ndjson_lines(path):
        if max_records is not None and len(out) >= max_records:
            break
        try:
            out.append(DLQRecord.model_validate_json(line))
        except ValidationError:
            logger.warning(f"Skipping malformed DLQ line {lineno} in {path}")
    return out
