"""
Pydantic data models for the telemetry exporter.

Records are immutable once built; the exporter creates them at export time
and they leave memory only through a confirmed backend write or DLQ relocation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator

from .utils import generate_id, utc_now

# Schema-less payload value: str | int | float | bool | None | nested dict/list
AttributeValue = JsonValue
Attributes = Dict[str, AttributeValue]


class LogLevel(str, Enum):
    """Log severity levels accepted by export_log."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ErrorInfo(BaseModel):
    """Serialized exception attached to a log or span."""

    model_config = ConfigDict(frozen=True)

    name: str
    message: str
    stack: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        import traceback

        stack = None
        if exc.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(name=type(exc).__name__, message=str(exc), stack=stack)


class LogRecord(BaseModel):
    """Structured log line with bucket-key metadata and a free-form payload."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel
    message: str
    component: str = "unknown"
    correlation_id: str = Field(default_factory=generate_id)
    tenant_id: str = "unknown"
    execution_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, AttributeValue] = Field(default_factory=dict)
    attributes: Attributes = Field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("correlation_id")
    @classmethod
    def _non_empty_correlation(cls, v: str) -> str:
        return v or generate_id()


class SpanStatus(BaseModel):
    """Span completion status."""

    model_config = ConfigDict(frozen=True)

    code: Literal["ok", "error", "unset"] = "ok"
    message: Optional[str] = None


class Span(BaseModel):
    """Finished span as handed over by instrumentation code.

    Times are epoch milliseconds, matching what tracers report.
    """

    name: str
    start_time: float
    end_time: float
    attributes: Attributes = Field(default_factory=dict)
    status: SpanStatus = Field(default_factory=SpanStatus)


class SpanRecord(BaseModel):
    """Span as stored in the telemetry collection."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    name: str
    start_time: float
    end_time: float
    duration_ms: float
    correlation_id: str = Field(default_factory=generate_id)
    tenant_id: Optional[str] = None
    execution_id: Optional[str] = None
    session_id: Optional[str] = None
    agent_name: Optional[str] = None
    tool_name: Optional[str] = None
    phase: Optional[str] = None
    attributes: Attributes = Field(default_factory=dict)
    status: SpanStatus = Field(default_factory=SpanStatus)
    error: Optional[ErrorInfo] = None
    critical: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("correlation_id")
    @classmethod
    def _non_empty_correlation(cls, v: str) -> str:
        return v or generate_id()


def to_document(record: BaseModel) -> dict[str, Any]:
    """JSON-safe dict for a record (datetimes as ISO strings)."""
    return record.model_dump(mode="json")
