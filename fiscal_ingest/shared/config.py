"""Shared configuration management for the ingestion pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_BATCH_MAX_CONCURRENCY=3
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    service_name: str = Field(
        default="fiscal-ingest",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Extraction service
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Extraction provider: openai (OpenAI-compatible gateway), ollama (self-hosted)",
    )
    openai_base_url: str | None = Field(
        default=None,
        description="Base URL of an OpenAI-compatible chat completions gateway (None = OpenAI)",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Vision-capable model used for document extraction",
    )
    extraction_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single extraction call",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5vl:7b",
        description="Vision-capable Ollama model",
    )

    # Batch processing
    batch_max_concurrency: int = Field(
        default=5,
        ge=1,
        description="Maximum documents in flight against the extraction service",
    )
    batch_max_retries: int = Field(
        default=3,
        ge=0,
        description="Additional attempts per item after the first failure",
    )
    batch_retry_base_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Base delay for exponential backoff (base * 2^(attempt-1))",
    )
    batch_pacing_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay inserted between chunks in chunked scheduling",
    )
    batch_scheduling: Literal["pool", "chunked"] = Field(
        default="pool",
        description="pool: semaphore-gated workers; chunked: strict consecutive chunks",
    )
    batch_max_items: int = Field(
        default=100,
        ge=1,
        description="Maximum files accepted per batch submission",
    )
    batch_progress_drain_timeout_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time a slow progress callback gets to drain before a batch returns",
    )
    confidence_gate: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Items below this confidence are not saved automatically",
    )
    max_file_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum accepted file size",
    )

    # Multi-section fallback sanity envelope
    fallback_min_total: float = Field(default=0.5, ge=0)
    fallback_max_delta: float = Field(default=8.0, ge=0)
    fallback_min_ratio: float = Field(default=0.45, gt=0)
    fallback_max_ratio: float = Field(default=2.6, gt=0)
    fallback_max_total_without_prior: float = Field(default=25.0, ge=0)
    regularization_max_amount: float = Field(
        default=50.0,
        gt=0,
        description="Regularization credits at or above this amount are not tracked separately",
    )

    # Background queue (arq)
    queue_enabled: bool = Field(
        default=True,
        description="Accept batch submissions over the API (requires Redis)",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the arq worker",
    )
    queue_max_jobs: int = Field(default=10, ge=1)
    queue_job_timeout: int = Field(default=1800, ge=1)

    # Observability
    metrics_port: int = Field(
        default=9108,
        ge=0,
        le=65535,
        description="Port of the worker's Prometheus endpoint (0 disables it)",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
