"""Environment-driven settings shared by the buyer, supplier and relay services."""

from functools import lru_cache
from typing import Callable

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a local .env file."""

    APP_NAME: str = "Order Relay"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    BUYER_PORT: int = 8000
    SUPPLIER_PORT: int = 8001
    REDIS_URL: str = "redis://localhost:6379/0"
    HTTP_TIMEOUT_S: float = 10.0

    # buyer domain
    ORDERS_TABLE: str = "CarOrders"
    TOKEN_SLOT_KEY: str = "/car-orders/order-stock-token"
    SUPPLIER_API_URL: str = ""
    SUPPLIER_API_KEY: str = ""

    # identity provider (client-credentials)
    AUTH_URL: str = ""
    ORDERS_CLIENT_ID: str = ""
    ORDERS_CLIENT_SECRET: str = ""
    ORDER_STOCK_SCOPE: str = "tires/create.order"
    TOKEN_REFRESH_INTERVAL_S: float = 3600.0

    # supplier domain
    STOCK_TABLE: str = "StockOrders"
    SUPPLIER_ACCEPTED_API_KEYS: str = ""
    EVENT_BUS_NAME: str = "orders-event-bus"
    SWEEP_INTERVAL_S: float = 60.0

    # completion relay
    RELAY_ENDPOINT: str = "http://localhost:8000/orders/*"
    RELAY_API_KEY: str = ""
    RELAY_RATE_LIMIT_PER_S: float = 50.0
    RELAY_MAX_ATTEMPTS: int = 10
    RELAY_MAX_EVENT_AGE_S: float = 3600.0
    RELAY_BACKOFF_BASE_S: float = 1.0
    RELAY_BACKOFF_MAX_S: float = 60.0
    RELAY_CONSUMER_GROUP: str = "car-orders-api-destination"
    RELAY_CONSUMER_NAME: str = "relay-1"
    DEAD_LETTER_KEY: str = "car-orders-api-dlq"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def token_scopes(self) -> tuple[str, ...]:
        """Return the scopes requested for the order-stock token."""

        return self._split_csv(self.ORDER_STOCK_SCOPE, transform=str.strip)

    def supplier_api_keys(self) -> frozenset[str]:
        """Return API keys the supplier front door accepts."""

        return frozenset(self._split_csv(self.SUPPLIER_ACCEPTED_API_KEYS, transform=str.strip))

    def missing(self, *names: str) -> list[str]:
        """Return the names of required settings that are blank."""

        return [name for name in names if not str(getattr(self, name)).strip()]

    @staticmethod
    def _split_csv(value: str, transform: Callable[[str], str]) -> tuple[str, ...]:
        """Split comma-separated values while removing empty entries and duplicates."""

        items: list[str] = []
        seen: set[str] = set()

        for raw in value.split(","):
            item = transform(raw.strip())
            if not item or item in seen:
                continue
            seen.add(item)
            items.append(item)

        return tuple(items)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""

    return Settings()
