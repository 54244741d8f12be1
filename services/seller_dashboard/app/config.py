"""
Seller Dashboard Service — 設定
"""

from pydantic import Field

from services.common.config import ServiceSettings


class Settings(ServiceSettings):
    SERVICE_NAME: str = "seller-dashboard-service"

    CONSUMER_GROUP: str = "seller_dashboard"
    CONSUMER_NAME: str = Field("seller-dashboard-1", description="Unique per process")
    SUBSCRIBED_TOPICS: list[str] = ["identity_events", "catalog_events", "order_events"]


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
