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

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Cost Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and integration token broker"

    # Security
    api_key: str = ""  # X-API-Key for service callers
    admin_api_key: str = ""  # X-Admin-Key for admin adjustments

    # Credential encryption (64 hex chars, or any string hashed to 32 bytes)
    encryption_key: str = ""

    # Token broker
    token_refresh_skew_seconds: int = 300
    provider_timeout_seconds: float = 15.0
    ledger_write_timeout_seconds: float = 10.0

    # Provider quotas (limit per window)
    fortnox_rate_limit: int = 25
    fortnox_rate_window_ms: int = 5_000
    hubspot_rate_limit: int = 100
    hubspot_rate_window_ms: int = 10_000
    microsoft365_rate_limit: int = 10_000
    microsoft365_rate_window_ms: int = 600_000

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "cost-ledger-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start without a database or an encryption key,
        otherwise credentials would be written in clear text.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if not self.encryption_key:
            errors.append("ENCRYPTION_KEY is required but empty or missing")

        if self.token_refresh_skew_seconds < 0:
            errors.append("TOKEN_REFRESH_SKEW_SECONDS cannot be negative")

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
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
