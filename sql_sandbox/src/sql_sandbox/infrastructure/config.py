"""Configuration management for the SQL sandbox."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseModel):
    """Execution engine configuration."""

    default_isolation: Literal["READ_COMMITTED", "REPEATABLE_READ", "SNAPSHOT"] = Field(
        default="SNAPSHOT", description="Isolation level used when begin() is given none"
    )
    max_trigger_depth: int = Field(
        default=32, ge=1, le=256, description="Maximum nesting depth of trigger invocations"
    )
    scan_batch_size: int = Field(
        default=256, ge=1, description="Rows read between cancellation checks during scans"
    )
    max_recursion: int = Field(
        default=100, ge=1, description="Maximum iterations of a recursive CTE"
    )
    vacuum_on_commit: bool = Field(
        default=True, description="Discard unreachable row versions after each commit"
    )
    sql_dialect: str = Field(default="sqlite", description="sqlglot dialect for SQL text")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(default="sql_sandbox", description="Service name for tracing")
    metrics_enabled: bool = Field(
        default=False, description="Expose Prometheus metrics over HTTP"
    )
    metrics_port: int = Field(default=8001, ge=1, le=65535, description="Prometheus metrics port")


class Config(BaseSettings):
    """Main configuration for the SQL sandbox."""

    model_config = SettingsConfigDict(
        env_prefix="SQL_SANDBOX_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
