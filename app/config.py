"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit reservation, settlement and refund ledger"
    cors_origins: str = "*"  # Comma-separated list
    environment: str = "development"  # development | production

    # Authentication
    jwt_secret: str = ""  # HS256 secret for user/admin bearer tokens
    jwt_algorithm: str = "HS256"
    cron_secret: str = ""  # Shared secret for sweep endpoints

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-ledger-api"
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # External farm service
    farm_api_base_url: str = "https://api.lovablextensao.shop"
    farm_api_key: str = ""
    farm_api_timeout_seconds: float = 20.0

    # Payment Provider - PIX
    pix_api_base_url: str = "https://finance.brpixpayments.com/api"
    pix_api_key: str = ""
    pix_webhook_secret: str = ""  # When set, webhook signatures are mandatory
    pix_api_timeout_seconds: float = 15.0

    # Admission / queue
    max_concurrent_generations: int = 8
    running_liveness_minutes: int = 10
    waiting_invite_liveness_minutes: int = 12
    creating_liveness_minutes: int = 3
    max_credits_per_generation: int = 10000
    credits_per_log_entry: int = 5

    # Sweeps
    waiting_invite_timeout_minutes: int = 10
    terminal_settle_delay_minutes: int = 10
    sweep_batch_size: int = 50
    sweep_interval_seconds: int = 60
    payment_grace_minutes: int = 2
    payment_max_age_days: int = 7
    payment_reconcile_batch_size: int = 200

    # Tokens
    token_purchase_validity_days: int = 30
    daily_reset_hour_utc: int = 15  # 12:00 BRT

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.max_concurrent_generations < 1:
            errors.append("MAX_CONCURRENT_GENERATIONS must be at least 1")

        if self.waiting_invite_liveness_minutes < self.waiting_invite_timeout_minutes:
            errors.append(
                "WAITING_INVITE_LIVENESS_MINUTES must not be shorter than "
                "WAITING_INVITE_TIMEOUT_MINUTES"
            )

        if not 0 <= self.daily_reset_hour_utc <= 23:
            errors.append("DAILY_RESET_HOUR_UTC must be between 0 and 23")

        if self.is_production:
            for name, value in (
                ("FARM_API_KEY", self.farm_api_key),
                ("PIX_API_KEY", self.pix_api_key),
                ("JWT_SECRET", self.jwt_secret),
            ):
                if not value:
                    errors.append(f"{name} is required in production")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
