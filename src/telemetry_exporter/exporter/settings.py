from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..normalize import DEFAULT_BUCKET_KEYS

DEFAULT_SECONDARY_INDEX_KEYS = [
    "metadata.component",
    "metadata.tenantId",
    "metadata.organizationId",
    "metadata.teamId",
]


def _data_dir() -> Path:
    return Path(os.environ.get("TELEMETRY_DATA_DIR") or tempfile.gettempdir())


class ExporterSettings(BaseSettings):
    """Exporter configuration, overridable through TELEMETRY_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="TELEMETRY_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # backend
    connection_string: str = "postgresql://localhost:5432/telemetry"
    database: str = "telemetry"
    logs_collection: str = "observability_logs"
    telemetry_collection: str = "observability_telemetry"
    retention_days: int = Field(0, ge=0)  # 0 = infinite
    secondary_index_keys: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SECONDARY_INDEX_KEYS)
    )
    bucket_keys: List[str] = Field(default_factory=lambda: list(DEFAULT_BUCKET_KEYS))
    pool_min_size: int = Field(1, ge=0)
    pool_max_size: int = Field(20, ge=1)
    connect_timeout_s: float = Field(5.0, gt=0)
    statement_timeout_ms: int = Field(30_000, ge=0)
    copy_min_rows: int = Field(1000, ge=1)

    # batching
    batch_size: int = Field(50, ge=1)
    flush_interval_ms: int = Field(15_000, ge=1)
    max_buffer_size: int = Field(5000, ge=1)
    max_critical_buffer_size: int = Field(10_000, ge=1)

    # durability
    wal_enabled: bool = True
    wal_path: Path = Field(default_factory=lambda: _data_dir() / "telemetry-wal-critical-spans.ndjson")
    dlq_path: Path = Field(default_factory=lambda: _data_dir() / "telemetry-dlq-overflow.ndjson")
    usage_attribute: str = "gen_ai.usage.total_tokens"

    # breaker / recovery
    failure_threshold: int = Field(5, ge=1)
    reset_timeout_ms: int = Field(30_000, ge=0)
    success_threshold: int = Field(2, ge=1)
    reconnect_delay_ms: int = Field(5000, ge=0)

    # lifecycle
    health_check_interval_ms: int = Field(30_000, ge=1)
    shutdown_timeout_ms: int = Field(10_000, ge=1)

    @field_validator("secondary_index_keys", "bucket_keys", mode="before")
    @classmethod
    def _split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @property
    def flush_interval(self) -> float:
        return self.flush_interval_ms / 1000.0

    @property
    def reset_timeout(self) -> float:
        return self.reset_timeout_ms / 1000.0

    @property
    def reconnect_delay(self) -> float:
        return self.reconnect_delay_ms / 1000.0

    @property
    def health_check_interval(self) -> float:
        return self.health_check_interval_ms / 1000.0

    @property
    def shutdown_timeout(self) -> float:
        return self.shutdown_timeout_ms / 1000.0


@lru_cache()
def get_settings() -> ExporterSettings:
    return ExporterSettings()
