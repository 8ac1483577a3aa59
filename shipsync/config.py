"""Shipsync configuration."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the sync service."""

    # Scan2Ship (carrier backend)
    scan2ship_api_url: str = "http://localhost:4000"
    scan2ship_api_key: str = ""
    # Empty secret disables order-ready signature checks (development only)
    scan2ship_webhook_secret: str = ""

    # Shopify (platform)
    shopify_api_secret: str = ""
    shopify_access_token: str = ""
    shopify_api_version: str = "2025-07"
    shopify_app_url: str = ""

    # Storage
    database_url: str = ""
    redis_url: str = ""

    admin_api_token: str = ""

    # Order sync policy
    required_credits_per_order: int = 1
    sync_max_retries: int = 3
    sync_base_delay_seconds: float = 1.0
    retry_jitter: float = 0.1
    order_reference_prefix: str = "SHOPIFY"
    stale_pending_seconds: float = 900.0

    # Checkout rates
    rates_timeout_seconds: float = 4.0
    analytics_timeout_seconds: float = 1.0
    fallback_rate_price: Decimal = Decimal("9.99")
    fallback_currency: str = "USD"
    fallback_min_days: int = 3
    fallback_max_days: int = 7
    carrier_service_name: str = "Scan2Ship"

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
