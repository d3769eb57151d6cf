"""Application settings for the decision pipeline, workers and scheduler."""

from __future__ import annotations

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven configuration (``.env`` supported)."""

    # Application
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_title: str = Field(default="Tradeflow Decision Engine", alias="API_TITLE")
    api_version: str = Field(default="0.1.0", alias="API_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./tradeflow.db",
        alias="DATABASE_URL",
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Task queue (memory queue when unset)
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    worker_count: int = Field(default=2, alias="WORKER_COUNT")
    auto_start_workers: bool = Field(default=True, alias="AUTO_START_WORKERS")

    # Phase supervision
    phase_timeout_seconds: float = Field(default=180.0, alias="PHASE_TIMEOUT_SECONDS")
    phase_max_retries: int = Field(default=3, alias="PHASE_MAX_RETRIES")
    phase_retry_backoff_seconds: float = Field(default=2.0, alias="PHASE_RETRY_BACKOFF_SECONDS")
    phase_retry_max_backoff_seconds: float = Field(
        default=30.0, alias="PHASE_RETRY_MAX_BACKOFF_SECONDS"
    )

    # Resilience defaults for brokerage and AI calls
    retry_default_attempts: int = Field(default=3, alias="RETRY_DEFAULT_ATTEMPTS")
    retry_default_backoff_seconds: float = Field(default=0.5, alias="RETRY_DEFAULT_BACKOFF_SECONDS")
    retry_max_backoff_seconds: float = Field(default=30.0, alias="RETRY_MAX_BACKOFF_SECONDS")
    circuit_breaker_failure_threshold: int = Field(default=5, alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD")
    circuit_breaker_recovery_seconds: int = Field(default=60, alias="CIRCUIT_BREAKER_RECOVERY_SECONDS")

    # AI provider defaults (overridden per request by apiSettings)
    ai_default_provider: str = Field(default="openai", alias="AI_DEFAULT_PROVIDER")
    ai_default_model: str = Field(default="gpt-4o-mini", alias="AI_DEFAULT_MODEL")
    ai_default_max_tokens: int = Field(default=1200, alias="AI_DEFAULT_MAX_TOKENS")
    ai_temperature: float = Field(default=0.2, alias="AI_TEMPERATURE")

    # Decision engine
    confidence_risk_adjustment_enabled: bool = Field(
        default=False, alias="CONFIDENCE_RISK_ADJUSTMENT_ENABLED"
    )
    default_target_cash_percent: float = Field(default=20.0, alias="DEFAULT_TARGET_CASH_PERCENT")

    # Near-limit scanner
    near_limit_scan_enabled: bool = Field(default=False, alias="NEAR_LIMIT_SCAN_ENABLED")
    near_limit_scan_interval_minutes: int = Field(
        default=30, alias="NEAR_LIMIT_SCAN_INTERVAL_MINUTES"
    )
    near_limit_dedupe_hours: float = Field(default=3.0, alias="NEAR_LIMIT_DEDUPE_HOURS")

    # Brokerage used when no user credentials are available (development)
    use_simulated_broker: bool = Field(default=False, alias="USE_SIMULATED_BROKER")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
    }

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Convert sync SQLite URLs to the aiosqlite driver."""
        if v.startswith("sqlite:///"):
            return v.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return v

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.database_url


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
