"""
Configuration management using pydantic-settings.

Settings are loaded from environment variables (12-factor app) and then turned
into small, frozen config objects that are handed to the engine components at
construction time. Engine code never reads the process environment directly.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Pipedrive
    pipedrive_api_token: str = Field(default="", description="Pipedrive API token")
    pipedrive_base_url: str = Field(
        default="https://api.pipedrive.com/v1", description="Pipedrive API base URL"
    )
    pipedrive_default_pipeline_id: int = Field(
        default=1, description="Pipeline ID used when the source omits one"
    )

    # Database
    db_path: str = Field(default="./data/flowmetrics.duckdb", description="DuckDB file path")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Ingestion
    ingestion_batch_size: int = Field(
        default=40, ge=1, description="Entities fetched concurrently per batch"
    )
    ingestion_batch_delay_seconds: float = Field(
        default=2.0, ge=0.0, description="Pause between batches"
    )
    source_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Per-entity fetch timeout"
    )
    source_max_attempts: int = Field(
        default=1, ge=1, description="In-client attempts for transient source errors"
    )
    rate_limit_requests: int = Field(default=40, ge=1, description="Requests per window")
    rate_limit_window_seconds: float = Field(default=2.0, gt=0.0, description="Rate window")
    ingestion_progress_every: int = Field(
        default=100, ge=1, description="Log progress every N entities"
    )
    ingestion_skip_invalid_events: bool = Field(
        default=True, description="Skip events with unparseable stage IDs"
    )
    failed_ids_path: str = Field(
        default="./data/failed-entity-ids.txt",
        description="Where IDs that failed after the retry pass are written",
    )
    flow_retention_days: int = Field(
        default=365, ge=1, description="Full sync purges intervals older than this"
    )
    incremental_default_days: int = Field(
        default=7, ge=1, description="Incremental window when no previous sync exists"
    )

    # Metrics
    metric_distribution_edges: str = Field(
        default="0,1,3,7,14,30,60,90",
        description="Lower edges (days) of the duration distribution buckets",
    )

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v


class SourceConfig(BaseModel):
    """Connection and rate-limit settings for the CRM stage-history source."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.pipedrive.com/v1"
    api_token: str = ""
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_attempts: int = Field(default=1, ge=1)
    rate_limit_requests: int = Field(default=40, ge=1)
    rate_limit_window_seconds: float = Field(default=2.0, gt=0.0)
    default_pipeline_id: int = 1
    page_size: int = Field(default=100, ge=1, le=500)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SourceConfig":
        return cls(
            base_url=settings.pipedrive_base_url,
            api_token=settings.pipedrive_api_token,
            timeout_seconds=settings.source_timeout_seconds,
            max_attempts=settings.source_max_attempts,
            rate_limit_requests=settings.rate_limit_requests,
            rate_limit_window_seconds=settings.rate_limit_window_seconds,
            default_pipeline_id=settings.pipedrive_default_pipeline_id,
        )


class IngestionConfig(BaseModel):
    """
    Batch ingestion parameters.

    batch_size and batch_delay_seconds together bound the aggregate request
    rate against the source. entity_timeout_seconds caps one entity's
    fetch + normalize + persist so no batch waits indefinitely.
    """

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=40, ge=1)
    batch_delay_seconds: float = Field(default=2.0, ge=0.0)
    entity_timeout_seconds: float = Field(default=30.0, gt=0.0)
    progress_every: int = Field(default=100, ge=1)
    skip_invalid_events: bool = True
    failed_ids_path: Optional[Path] = None
    retention_days: int = Field(default=365, ge=1)
    incremental_default_days: int = Field(default=7, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestionConfig":
        return cls(
            batch_size=settings.ingestion_batch_size,
            batch_delay_seconds=settings.ingestion_batch_delay_seconds,
            entity_timeout_seconds=settings.source_timeout_seconds,
            progress_every=settings.ingestion_progress_every,
            skip_invalid_events=settings.ingestion_skip_invalid_events,
            failed_ids_path=Path(settings.failed_ids_path) if settings.failed_ids_path else None,
            retention_days=settings.flow_retention_days,
            incremental_default_days=settings.incremental_default_days,
        )


class MetricsConfig(BaseModel):
    """Aggregation output settings."""

    model_config = ConfigDict(frozen=True)

    distribution_edges: tuple[float, ...] = (0, 1, 3, 7, 14, 30, 60, 90)
    round_digits: int = Field(default=2, ge=0)

    @field_validator("distribution_edges")
    @classmethod
    def validate_edges(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        """Edges must start at zero and be strictly increasing."""
        if not v or v[0] != 0:
            raise ValueError("Distribution edges must start at 0")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError("Distribution edges must be strictly increasing")
        return v

    @classmethod
    def from_settings(cls, settings: Settings) -> "MetricsConfig":
        edges = tuple(
            float(part) for part in settings.metric_distribution_edges.split(",") if part.strip()
        )
        return cls(distribution_edges=edges)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
