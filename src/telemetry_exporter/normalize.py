"""
Record building: context normalization, bucket-key metadata and span field
extraction.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from .models import (
    Attributes,
    ErrorInfo,
    LogLevel,
    LogRecord,
    Span,
    SpanRecord,
    SpanStatus,
)
from .utils import from_epoch_ms, generate_id

DEFAULT_BUCKET_KEYS: tuple[str, ...] = ("component", "level", "tenantId")

# Nested identifier blocks flattened onto the top-level context.
NESTED_ID_BLOCKS: tuple[str, ...] = ("organizationAndTeamData",)
NESTED_ID_KEYS: tuple[str, ...] = ("organizationId", "teamId", "tenantId")

# Well-known span attribute keys, first match wins.
CORRELATION_KEYS = ("agent.correlation.id", "tool.correlation.id", "correlationId")
TENANT_KEYS = ("agent.tenant.id", "tenantId", "tenant.id")
EXECUTION_KEYS = ("agent.execution.id", "tool.execution.id", "execution.id")
SESSION_KEYS = ("agent.conversation.id", "sessionId", "conversation.id")
AGENT_NAME_KEY = "agent.name"
TOOL_NAME_KEY = "tool.name"
PHASE_KEY = "agent.phase"

UNKNOWN = "unknown"


def json_safe(value: Any, _depth: int = 0) -> Any:
    """Coerce an arbitrary value into the attribute value domain."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if _depth > 16:
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): json_safe(v, _depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v, _depth + 1) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return json_safe(value.value, _depth + 1)
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return str(value)


def normalize_context(context: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Flatten nested organization/team/tenant ids without overwriting."""
    normalized: dict[str, Any] = dict(context or {})
    for block_key in NESTED_ID_BLOCKS:
        block = normalized.get(block_key)
        if not isinstance(block, Mapping):
            continue
        for key in NESTED_ID_KEYS:
            if not normalized.get(key) and block.get(key):
                normalized[key] = block[key]
    return normalized


def bucket_metadata(
    component: str,
    level: LogLevel,
    context: Mapping[str, Any],
    bucket_keys: Sequence[str] = DEFAULT_BUCKET_KEYS,
) -> dict[str, Any]:
    """Low-cardinality partition fields; missing values become 'unknown'."""
    metadata: dict[str, Any] = {"component": component, "level": level.value}
    for key in bucket_keys:
        if key in ("component", "level"):
            continue
        value = context.get(key)
        metadata[key] = json_safe(value) if value else UNKNOWN
    if not metadata.get("tenantId"):
        metadata["tenantId"] = context.get("tenantId") or UNKNOWN
    return metadata


def build_log_record(
    level: Union[LogLevel, str],
    message: str,
    context: Union[Mapping[str, Any], str, None] = None,
    error: Optional[BaseException] = None,
    bucket_keys: Sequence[str] = DEFAULT_BUCKET_KEYS,
) -> LogRecord:
    lvl = level if isinstance(level, LogLevel) else LogLevel(str(level).lower())

    if isinstance(context, str):
        component, ctx = context, {}
    else:
        ctx = normalize_context(context)
        component = str(ctx.get("component") or UNKNOWN)

    metadata = bucket_metadata(component, lvl, ctx, bucket_keys)
    original_correlation = ctx.get("correlationId")
    attributes: Attributes = json_safe(ctx)
    attributes["originalCorrelationId"] = json_safe(original_correlation)

    return LogRecord(
        level=lvl,
        message=str(message),
        component=component,
        correlation_id=str(original_correlation or generate_id()),
        tenant_id=str(metadata["tenantId"]),
        execution_id=_opt_str(ctx.get("executionId")),
        session_id=_opt_str(ctx.get("sessionId")),
        metadata=metadata,
        attributes=attributes,
        error=ErrorInfo.from_exception(error) if error is not None else None,
    )


def build_span_record(
    span: Span, is_critical: Optional[Callable[[Mapping[str, Any]], bool]] = None
) -> SpanRecord:
    """Extract well-known fields; ``is_critical`` sees the sanitized attributes."""
    attrs = json_safe(span.attributes)
    status = span.status
    return SpanRecord(
        timestamp=from_epoch_ms(span.start_time),
        name=span.name,
        start_time=span.start_time,
        end_time=span.end_time,
        duration_ms=span.end_time - span.start_time,
        correlation_id=_first(attrs, CORRELATION_KEYS) or generate_id(),
        tenant_id=_first(attrs, TENANT_KEYS),
        execution_id=_first(attrs, EXECUTION_KEYS),
        session_id=_first(attrs, SESSION_KEYS),
        agent_name=_opt_str(attrs.get(AGENT_NAME_KEY)),
        tool_name=_opt_str(attrs.get(TOOL_NAME_KEY)),
        phase=_opt_str(attrs.get(PHASE_KEY)),
        attributes=attrs,
        status=status,
        error=ErrorInfo(name="Error", message=status.message) if status.message else None,
        critical=bool(is_critical(attrs)) if is_critical else False,
    )


def coerce_span(span: Union[Span, Mapping[str, Any]]) -> Span:
    if isinstance(span, Span):
        return span
    data = dict(span)
    status = data.get("status")
    if isinstance(status, str):
        data["status"] = SpanStatus(code=status)
    return Span.model_validate(data)


def sort_by_bucket_keys(records: Iterable[LogRecord], bucket_keys: Sequence[str]) -> list[LogRecord]:
    """Stable sort so records sharing a bucket are written together."""
    return sorted(
        records,
        key=lambda r: tuple(str(r.metadata.get(k) or "") for k in bucket_keys),
    )


def _first(attrs: Mapping[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = attrs.get(key)
        if value:
            return str(value)
    return None


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value else None
