"""
Order Service — 設定
"""

from decimal import Decimal

from pydantic import Field

from services.common.config import ServiceSettings


class Settings(ServiceSettings):
    SERVICE_NAME: str = "order-service"

    # 同期呼び出し先
    CART_SERVICE_URL: str = "http://localhost:3002"
    CATALOG_SERVICE_URL: str = "http://localhost:3001"
    ACCESSOR_TIMEOUT: float = Field(5.0, description="Per-call timeout (seconds)")
    ACCESSOR_MAX_ATTEMPTS: int = Field(3, description="Attempts on transient errors")
    ACCESSOR_BACKOFF: float = Field(0.2, description="Exponential backoff multiplier")

    # 価格計算
    TAX_RATE: Decimal = Decimal("0.10")
    SHIPPING_FEE: Decimal = Decimal("5.00")

    # Saga
    RESERVATION_TTL_SECONDS: int = 300
    SAGA_DEADLINE_SECONDS: float = 20.0
    PERSIST_TIMEOUT_SECONDS: float = Field(
        5.0, description="Bound on the Order + Outbox write"
    )

    # Outbox リレー
    ORDER_EVENTS_TOPIC: str = "order_events"
    OUTBOX_POLL_INTERVAL: float = 0.5
    OUTBOX_BATCH_SIZE: int = 100
    RUN_OUTBOX_RELAY: bool = Field(
        False, description="Run the outbox relay inside the API process"
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
