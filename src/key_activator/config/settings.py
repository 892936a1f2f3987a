"""Configuration settings for the Key Activator."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Backend collaborator (sessions, proxy credentials, activation reports)
    backend_url: str = "http://localhost:54321"
    backend_api_key: Optional[str] = None
    backend_timeout_seconds: float = 15.0

    # Vendor commerce API
    vendor_api_base_url: str = "https://purchase.mp.microsoft.com/v7.0"
    vendor_timeout_seconds: float = 10.0
    vendor_language: str = "en-US"
    fallback_market: str = "US"
    client_name: str = "AccountMicrosoftCom"
    client_version: str = "1.0"

    # Browser surfaces
    identity_url: str = "https://account.microsoft.com/"
    identity_host: str = "account.microsoft.com"
    redeem_page_url: str = "https://account.microsoft.com/billing/redeem"

    # Timeouts for browser waits (seconds)
    token_timeout_seconds: float = 30.0
    conversion_timeout_seconds: float = 30.0

    # Network check run by diagnostics (seconds)
    diagnostics_timeout_seconds: float = 5.0

    # Cache lifetimes (seconds)
    token_cache_ttl_seconds: int = 3600
    credentials_cache_ttl_seconds: int = 3600

    # Retry limits
    max_token_attempts: int = 3
    max_validation_attempts: int = 3
    max_redemption_attempts: int = 2

    # Exponential backoff
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 8.0
    backoff_jitter: bool = True

    # Bundle throttling
    bundle_key_delay_seconds: float = 3.0
    bundle_failure_penalty_seconds: float = 2.0
    bundle_delay_jitter_seconds: float = 0.5
    bundle_min_delay_seconds: float = 1.0

    # Catalog knowledge
    subscription_product_ids: list[str] = Field(
        default_factory=lambda: ["CFQ7TTC0K5DJ", "CFQ7TTC0KHS0"]
    )
    accepted_vendors: list[str] = Field(
        default_factory=lambda: ["Microsoft Store", "Xbox", "Microsoft", "Xbox Game Pass"]
    )
    default_region: str = "IL"

    # Device identity used to key the token cache
    device_id: str = "default-device"

    # Storage for TTL caches
    storage_type: str = "memory"  # memory, sqlite, redis
    database_url: str = "sqlite:///./key_activator.db"
    redis_url: Optional[str] = None

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
