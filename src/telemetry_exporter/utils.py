"""
Utility functions for the telemetry exporter.

Includes id/time helpers and NDJSON file iteration.
"""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Tuple, Union


def generate_id() -> str:
    """Generate a UUID string for record identification."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def from_epoch_ms(ms: float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def iter_ndjson_lines(path: Union[str, Path]) -> Iterator[Tuple[int, str]]:
    """Yield (line_number, raw_line) for each non-blank line of an NDJSON file."""
    with open(path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if line:
                yield lineno, line


def count_ndjson(path: Union[str, Path]) -> Dict[str, Any]:
    """Count valid and malformed lines of an NDJSON file."""
    p = Path(path)
    stats: Dict[str, Any] = {"path": str(p), "exists": p.exists(), "valid": 0, "malformed": 0}
    if not p.exists():
        return stats
    stats["bytes"] = p.stat().st_size
    for _, line in iter_ndjson_lines(p):
        try:
            json.loads(line)
            stats["valid"] += 1
        except json.JSONDecodeError:
            stats["malformed"] += 1
    return stats
