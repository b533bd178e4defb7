"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=5, description="Database connection pool size")
    database_max_overflow: int = Field(default=10, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="marketplace-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=2, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    cron_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected in the ?secret= query parameter of cron triggers",
    )
    api_key: Optional[str] = Field(
        default=None, description="API key expected from the marketplace web backend"
    )
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # Settlement
    currency: str = Field(default="NGN", description="Settlement currency (ISO 4217)")
    platform_commission_rate: Decimal = Field(
        default=Decimal("0.05"), description="Fallback platform commission rate (0-1)"
    )
    minimum_payout_minor: int = Field(
        default=100_000, description="Fallback minimum payout in minor units"
    )
    payout_processing_days: int = Field(
        default=3, description="Fallback business days between payout request and transfer"
    )
    escrow_holding_days: int = Field(
        default=7, description="Days after delivery before escrowed funds are released"
    )
    reconciliation_lookback_days: int = Field(
        default=7, description="Days of payment records checked by reconciliation"
    )
    settings_cache_ttl: float = Field(
        default=300.0, description="Platform settings cache TTL (seconds)"
    )

    # Worker
    job_run_hour: int = Field(default=2, description="Hour of day (UTC) the job runner fires")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key is a test or live secret key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("platform_commission_rate")
    @classmethod
    def validate_commission_rate(cls, v: Decimal) -> Decimal:
        """Commission rate must be a fraction."""
        if v < 0 or v > 1:
            raise ValueError("Commission rate must be between 0 and 1")
        return v

    @field_validator("payout_processing_days")
    @classmethod
    def validate_processing_days(cls, v: int) -> int:
        """Processing days must be between 1 and 30 business days."""
        if v < 1 or v > 30:
            raise ValueError("Payout processing days must be between 1 and 30")
        return v

    @field_validator("escrow_holding_days", "reconciliation_lookback_days", "minimum_payout_minor")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Must not be negative")
        return v

    @field_validator("job_run_hour")
    @classmethod
    def validate_job_run_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("Job run hour must be between 0 and 23")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency code."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def cron_auth_enabled(self) -> bool:
        """Cron triggers are open when no shared secret is configured."""
        return bool(self.cron_secret)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
