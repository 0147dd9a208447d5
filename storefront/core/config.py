# storefront/core/config.py
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized storefront settings loaded from environment.

    Remote stores:
      - API_BASE_URL (Cart Store + Catalog Store, e.g. http://localhost:5001/api)
      - API_TOKEN (optional bearer token, already issued by the auth flow)

    Local storage:
      - LOCAL_STORE_URL (SQLite database used for guest cart + wishlist)

    Pricing:
      - FREE_SHIPPING_THRESHOLD, SHIPPING_FEE, TAX_RATE
    """

    PROJECT_NAME: str = "CaperSports Storefront"

    API_BASE_URL: str = "http://localhost:5001/api"
    API_TOKEN: str | None = None
    REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Product list cache (empty filter only)
    CATALOG_CACHE_TTL_SECONDS: float = 300.0

    # Durable client-local storage
    LOCAL_STORE_URL: str = "sqlite:///storefront_local.db"
    GUEST_CART_KEY: str = "capersports_guest_cart"
    WISHLIST_KEY: str = "capersports_wishlist"

    # Pricing policy
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("1000")
    SHIPPING_FEE: Decimal = Decimal("100")
    TAX_RATE: Decimal = Decimal("0.18")

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader.
    Ensures we don't re-parse .env on every import / call.
    """
    return Settings()
