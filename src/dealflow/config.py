"""Runtime configuration for the job queue, LLM gateway and HTTP API."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class QueueSettings:
    """Job queue processing settings."""

    default_max_retries: int = 3
    lock_ttl_seconds: int = 300
    completed_retention_hours: int = 24
    stuck_processing_minutes: int = 30
    max_backoff_minutes: int = 60
    inter_job_pause_seconds: float = 0.0
    default_worker_id: str = "default"
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class GatewaySettings:
    """LLM control plane caps, cache and retry settings."""

    per_deal_cost_cap: float = 25.0
    per_minute_cost_cap: float = 100.0
    cache_ttl_hours: int = 24
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    max_attempts: int = 3
    default_provider: str = "openai"


@dataclass(slots=True)
class ProviderSettings:
    """Credentials and endpoints for model providers."""

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    perplexity_api_key: str | None = None
    perplexity_base_url: str = "https://api.perplexity.ai"
    request_timeout_seconds: float = 60.0


@dataclass(slots=True)
class EngineSettings:
    """Downstream engine function endpoints."""

    functions_base_url: str = "http://localhost:54321/functions/v1"
    functions_api_key: str | None = None
    request_timeout_seconds: float = 120.0
    deals_base_url: str | None = None


@dataclass(slots=True)
class ApiSettings:
    """HTTP server bind settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".dealflow.db")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    engines: EngineSettings = field(default_factory=EngineSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DEALFLOW_DB_PATH", ".dealflow.db")),
            log_level=os.getenv("DEALFLOW_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                default_max_retries=int(os.getenv("DEALFLOW_QUEUE_MAX_RETRIES", "3")),
                lock_ttl_seconds=int(os.getenv("DEALFLOW_QUEUE_LOCK_TTL_SECONDS", "300")),
                completed_retention_hours=int(
                    os.getenv("DEALFLOW_QUEUE_COMPLETED_RETENTION_HOURS", "24"),
                ),
                stuck_processing_minutes=int(
                    os.getenv("DEALFLOW_QUEUE_STUCK_PROCESSING_MINUTES", "30"),
                ),
                max_backoff_minutes=int(os.getenv("DEALFLOW_QUEUE_MAX_BACKOFF_MINUTES", "60")),
                inter_job_pause_seconds=float(
                    os.getenv("DEALFLOW_QUEUE_INTER_JOB_PAUSE_SECONDS", "0"),
                ),
                default_worker_id=os.getenv("DEALFLOW_WORKER_ID", "default"),
                busy_timeout_ms=int(os.getenv("DEALFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            gateway=GatewaySettings(
                per_deal_cost_cap=float(os.getenv("DEALFLOW_COST_CAP_PER_DEAL", "25.0")),
                per_minute_cost_cap=float(os.getenv("DEALFLOW_COST_CAP_PER_MINUTE", "100.0")),
                cache_ttl_hours=int(os.getenv("DEALFLOW_LLM_CACHE_TTL_HOURS", "24")),
                rate_limit_requests=int(os.getenv("DEALFLOW_RATE_LIMIT_REQUESTS", "100")),
                rate_limit_window_seconds=int(
                    os.getenv("DEALFLOW_RATE_LIMIT_WINDOW_SECONDS", "60"),
                ),
                max_attempts=int(os.getenv("DEALFLOW_LLM_MAX_ATTEMPTS", "3")),
                default_provider=os.getenv("DEALFLOW_LLM_PROVIDER", "openai").strip().lower(),
            ),
            providers=ProviderSettings(
                openai_api_key=_env_optional("OPENAI_API_KEY"),
                openai_base_url=os.getenv("DEALFLOW_OPENAI_BASE_URL", "https://api.openai.com/v1"),
                perplexity_api_key=_env_optional("PERPLEXITY_API_KEY"),
                perplexity_base_url=os.getenv(
                    "DEALFLOW_PERPLEXITY_BASE_URL",
                    "https://api.perplexity.ai",
                ),
                request_timeout_seconds=float(
                    os.getenv("DEALFLOW_PROVIDER_TIMEOUT_SECONDS", "60"),
                ),
            ),
            engines=EngineSettings(
                functions_base_url=os.getenv(
                    "DEALFLOW_FUNCTIONS_BASE_URL",
                    "http://localhost:54321/functions/v1",
                ),
                functions_api_key=_env_optional("DEALFLOW_FUNCTIONS_API_KEY"),
                request_timeout_seconds=float(
                    os.getenv("DEALFLOW_FUNCTIONS_TIMEOUT_SECONDS", "120"),
                ),
                deals_base_url=_env_optional("DEALFLOW_DEALS_BASE_URL"),
            ),
            api=ApiSettings(
                host=os.getenv("DEALFLOW_API_HOST", "127.0.0.1"),
                port=int(os.getenv("DEALFLOW_API_PORT", "8000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"DEALFLOW_LOG_LEVEL is not a logging level: {self.log_level!r}")
        if self.queue.default_max_retries < 0:
            raise ValueError("DEALFLOW_QUEUE_MAX_RETRIES must be >= 0.")
        if self.queue.lock_ttl_seconds <= 0:
            raise ValueError("DEALFLOW_QUEUE_LOCK_TTL_SECONDS must be > 0.")
        if self.queue.completed_retention_hours < 0:
            raise ValueError("DEALFLOW_QUEUE_COMPLETED_RETENTION_HOURS must be >= 0.")
        if self.queue.stuck_processing_minutes <= 0:
            raise ValueError("DEALFLOW_QUEUE_STUCK_PROCESSING_MINUTES must be > 0.")
        if self.queue.max_backoff_minutes <= 0:
            raise ValueError("DEALFLOW_QUEUE_MAX_BACKOFF_MINUTES must be > 0.")
        if self.queue.inter_job_pause_seconds < 0:
            raise ValueError("DEALFLOW_QUEUE_INTER_JOB_PAUSE_SECONDS must be >= 0.")
        if not self.queue.default_worker_id.strip():
            raise ValueError("DEALFLOW_WORKER_ID must not be empty.")
        if self.gateway.per_deal_cost_cap <= 0:
            raise ValueError("DEALFLOW_COST_CAP_PER_DEAL must be > 0.")
        if self.gateway.per_minute_cost_cap <= 0:
            raise ValueError("DEALFLOW_COST_CAP_PER_MINUTE must be > 0.")
        if self.gateway.cache_ttl_hours <= 0:
            raise ValueError("DEALFLOW_LLM_CACHE_TTL_HOURS must be > 0.")
        if self.gateway.rate_limit_requests <= 0:
            raise ValueError("DEALFLOW_RATE_LIMIT_REQUESTS must be > 0.")
        if self.gateway.rate_limit_window_seconds <= 0:
            raise ValueError("DEALFLOW_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.gateway.max_attempts <= 0:
            raise ValueError("DEALFLOW_LLM_MAX_ATTEMPTS must be > 0.")
        if self.gateway.default_provider not in {"openai", "perplexity"}:
            raise ValueError(
                "DEALFLOW_LLM_PROVIDER must be one of: openai, perplexity "
                f"(got {self.gateway.default_provider!r}).",
            )
        for name, url in (
            ("DEALFLOW_OPENAI_BASE_URL", self.providers.openai_base_url),
            ("DEALFLOW_PERPLEXITY_BASE_URL", self.providers.perplexity_base_url),
            ("DEALFLOW_FUNCTIONS_BASE_URL", self.engines.functions_base_url),
        ):
            _validate_url(name, url)
        if self.engines.deals_base_url is not None:
            _validate_url("DEALFLOW_DEALS_BASE_URL", self.engines.deals_base_url)
        if not 0 < self.api.port < 65_536:
            raise ValueError("DEALFLOW_API_PORT must be between 1 and 65535.")


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _validate_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. "
            "Expected an absolute URL with http:// or https:// scheme.",
        )
