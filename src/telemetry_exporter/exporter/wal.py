"""
Write-ahead log for critical spans.

Every critical span is appended on arrival. The file is replayed into the
critical buffer at startup and rewritten after each confirmed critical flush,
so it always covers whatever critical data has not reached the backend yet.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from loguru import logger
from pydantic import ValidationError

from ..models import SpanRecord
from ..utils import iter_ndjson_lines
from .journal import JournalOp, JournalWriter


class WriteAheadLog:
    def __init__(self, path: Union[str, Path], writer: JournalWriter, *, enabled: bool = True):
        self.path = Path(path)
        self.enabled = enabled
        self._writer = writer
        self.append_failures = 0

    def append(self, record: SpanRecord) -> None:
        """Queue one span for durable append. Fire-and-forget."""
        if not self.enabled:
            return
        self._writer.submit(
            JournalOp("append", self.path, [record.model_dump_json()], on_error=self._append_failed)
        )

    def _append_failed(self, exc: Exception) -> None:
        self.append_failures += 1
        logger.error(f"Failed to write critical span to WAL {self.path}: {exc}")

    def reset(
        self,
        remaining: Iterable[SpanRecord],
        pinned: Optional[Callable[[], Iterable[SpanRecord]]] = None,
    ) -> None:
        """Shrink the WAL after a confirmed flush; remove it when nothing is left.

        ``remaining`` is the unflushed buffer as of now. ``pinned`` is evaluated
        when the rewrite is applied and adds spans that must stay covered
        (stranded DLQ evictions).
        """
        if not self.enabled:
            return
        lines = [r.model_dump_json() for r in remaining]
        extra = None
        if pinned is not None:
            extra = lambda: [r.model_dump_json() for r in pinned()]  # noqa: E731
        kind = "rewrite" if lines else "remove"
        self._writer.submit(
            JournalOp(kind, self.path, lines, extra_lines=extra, on_error=self._reset_failed)
        )

    def _reset_failed(self, exc: Exception) -> None:
        # Leaving the old file is safe: it is a superset of what is unflushed.
        logger.warning(f"Failed to clear WAL {self.path}: {exc}")

    def replay(self) -> list[SpanRecord]:
        """Read back every valid span; malformed lines are skipped.

        Blocking; call through ``asyncio.to_thread`` from async code.
        """
        if not self.enabled or not self.path.exists():
            return []

        recovered: list[SpanRecord] = []
        skipped = 0
        try:
            for lineno, line in iter_ndjson_lines(self.path):
                try:
                    recovered.append(SpanRecord.model_validate_json(line))
                except ValidationError as exc:
                    skipped += 1
                    logger.warning(
                        f"Skipping malformed WAL line {lineno} in {self.path}: "
                        f"{exc.error_count()} error(s)"
                    )
        except (OSError, UnicodeDecodeError) as exc:
            logger.error(f"Failed to recover from WAL {self.path}: {exc}")

        if recovered or skipped:
            logger.info(
                f"WAL recovery complete: {len(recovered)} critical spans recovered, "
                f"{skipped} malformed lines skipped"
            )
        return recovered
