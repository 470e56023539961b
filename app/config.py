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
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Forge Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and database query proxy for the code generation platform"

    # Security - shared secret presented by the orchestration gateway
    service_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "forge-ledger-api"

    # Credit policy
    units_per_credit: int = 2000  # "tokens" represented by one credit
    free_tier_credits: int = 5
    pro_tier_credits: int = 100
    enterprise_tier_credits: int = 1000
    default_subscription_days: int = 30
    monthly_period_days: int = 30

    # Query proxy
    max_query_limit: int = 1000
    proxy_timeout_seconds: float = 15.0
    provider_rest_url_template: str = "https://{project_ref}.supabase.co/rest/v1"

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
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.units_per_credit <= 0:
            errors.append("UNITS_PER_CREDIT must be positive")

        if min(self.free_tier_credits, self.pro_tier_credits, self.enterprise_tier_credits) < 0:
            errors.append("Tier credit allowances cannot be negative")

        if self.default_subscription_days <= 0 or self.monthly_period_days <= 0:
            errors.append("DEFAULT_SUBSCRIPTION_DAYS and MONTHLY_PERIOD_DAYS must be positive")

        if self.max_query_limit <= 0:
            errors.append("MAX_QUERY_LIMIT must be positive")

        if self.proxy_timeout_seconds <= 0:
            errors.append("PROXY_TIMEOUT_SECONDS must be positive")

        if "{project_ref}" not in self.provider_rest_url_template:
            errors.append("PROVIDER_REST_URL_TEMPLATE must contain {project_ref}")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
