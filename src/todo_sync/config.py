from __future__ import annotations

from typing import ClassVar, final

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFLICT_STRATEGIES = ("remote_wins", "local_wins", "manual")


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Todo Sync Backend"
    api_prefix: str = "/api/v1"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"

    database_url: str = "sqlite:///./dev.db"
    log_level: str = "INFO"

    # Remote todo API (the independently-owned collection)
    external_api_base_url: str = "http://localhost:5100"
    external_api_timeout_seconds: float = 30.0
    # Echoed as source_id on every entity this instance creates remotely.
    external_api_source_id: str = "todo-sync-local"

    # Sync scheduling
    sync_interval_seconds: int = 300
    sync_background_enabled: bool = True
    sync_on_startup: bool = False
    # Upper bound for one pass; the remainder is deferred to the next tick.
    sync_max_duration_seconds: float = 600.0
    sync_conflict_strategy: str = "remote_wins"

    # Retry policy for remote calls. max_attempts counts the first call too.
    retry_enabled: bool = True
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    retry_jitter_factor: float = 0.1
    retry_request_timeout_seconds: float = 30.0

    # Circuit breaker (rolling window)
    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_ratio: float = 0.5
    circuit_breaker_minimum_throughput: int = 10
    circuit_breaker_sampling_duration_seconds: float = 30.0
    circuit_breaker_break_duration_seconds: float = 30.0

    @model_validator(mode="after")
    def _validate_tunables(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        errors: list[str] = []

        if self.retry_max_attempts < 1:
            errors.append("RETRY_MAX_ATTEMPTS must be >= 1")
        if self.retry_base_delay_ms < 0 or self.retry_max_delay_ms < 0:
            errors.append("RETRY_*_DELAY_MS must be >= 0")
        if not 0.0 <= self.retry_jitter_factor <= 1.0:
            errors.append("RETRY_JITTER_FACTOR must be within 0..1")
        if self.retry_request_timeout_seconds <= 0:
            errors.append("RETRY_REQUEST_TIMEOUT_SECONDS must be > 0")

        if not 0.0 < self.circuit_breaker_failure_ratio <= 1.0:
            errors.append("CIRCUIT_BREAKER_FAILURE_RATIO must be within (0, 1]")
        if self.circuit_breaker_minimum_throughput < 1:
            errors.append("CIRCUIT_BREAKER_MINIMUM_THROUGHPUT must be >= 1")
        if self.circuit_breaker_sampling_duration_seconds <= 0:
            errors.append("CIRCUIT_BREAKER_SAMPLING_DURATION_SECONDS must be > 0")
        if self.circuit_breaker_break_duration_seconds <= 0:
            errors.append("CIRCUIT_BREAKER_BREAK_DURATION_SECONDS must be > 0")

        if self.sync_interval_seconds <= 0:
            errors.append("SYNC_INTERVAL_SECONDS must be > 0")
        if self.sync_max_duration_seconds <= 0:
            errors.append("SYNC_MAX_DURATION_SECONDS must be > 0")
        if self.sync_conflict_strategy.strip().lower() not in CONFLICT_STRATEGIES:
            errors.append(
                "SYNC_CONFLICT_STRATEGY must be one of: " + ", ".join(CONFLICT_STRATEGIES)
            )

        if self.environment.strip().lower() == "production":
            if not self.external_api_base_url.strip():
                errors.append("EXTERNAL_API_BASE_URL must be set in production")
            if not self.external_api_source_id.strip():
                errors.append("EXTERNAL_API_SOURCE_ID must be set in production")

        if errors:
            raise ValueError("Invalid settings: " + "; ".join(errors))
        return self

    def config_warnings(self) -> list[str]:
        warnings: list[str] = []
        if not self.retry_enabled:
            warnings.append("RETRY_ENABLED=false: remote calls are attempted once")
        if not self.circuit_breaker_enabled:
            warnings.append("CIRCUIT_BREAKER_ENABLED=false: a failing remote API is never short-circuited")
        if self.sync_conflict_strategy.strip().lower() == "manual":
            warnings.append("SYNC_CONFLICT_STRATEGY=manual: conflicts wait for operator resolution")
        if self.retry_base_delay_ms > self.retry_max_delay_ms:
            warnings.append("RETRY_BASE_DELAY_MS exceeds RETRY_MAX_DELAY_MS; every delay is capped")
        return warnings


settings = Settings()
