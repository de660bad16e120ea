"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_signature_tolerance: int = Field(
        default=300, description="Maximum age of a signed webhook (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (optional fast path in front of the order ledger)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    settled_cache_ttl: int = Field(
        default=86400 * 7, description="TTL of settled-notification markers (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="booking-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=4242, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:5173,http://localhost:5174",
        description="CORS allowed origins (comma-separated)",
    )

    # Settlement
    order_number_prefix: str = Field(default="CMD", description="Order number prefix")
    order_number_max_attempts: int = Field(
        default=3, ge=1, description="Attempts when two settlements draw the same order number"
    )
    default_currency: str = Field(default="eur", description="Currency when Stripe omits it")
    anonymous_customer_name: str = Field(
        default="Anonyme", description="Customer name when none is provided"
    )

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")
    outbox_publish_attempts: int = Field(default=3, ge=1, description="Publish attempts per event")
    outbox_backlog_alert_threshold: int = Field(
        default=1000, description="Pending outbox events above which health reports degraded"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("stripe_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        """Validate that the webhook secret is a Stripe signing secret."""
        if not v.startswith("whsec_"):
            raise ValueError("Invalid webhook signing secret format. Must start with 'whsec_'")
        return v

    @field_validator("order_number_prefix")
    @classmethod
    def validate_order_number_prefix(cls, v: str) -> str:
        """Order numbers are ``<PREFIX>-<year>-<seq>``; the prefix must not contain a dash."""
        v = v.strip().upper()
        if not v.isalnum():
            raise ValueError("Order number prefix must be alphanumeric")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, v: str) -> str:
        """Stripe currencies are lower-case ISO 4217 codes."""
        v = v.strip().lower()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Default currency must be a three-letter ISO 4217 code")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def require_live_key_in_production(self) -> "Settings":
        """Production must run with a live Stripe key."""
        if self.is_production and self.is_test_mode:
            raise ValueError("A Stripe test key cannot be used when APP_ENV is production")
        return self

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


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
