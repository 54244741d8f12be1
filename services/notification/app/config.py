"""
Notification Service — 設定
"""

from pydantic import Field

from services.common.config import ServiceSettings


class Settings(ServiceSettings):
    SERVICE_NAME: str = "notification-service"

    # メールゲートウェイ。空なら送信内容をログに出すだけ
    EMAIL_GATEWAY_URL: str = ""
    EMAIL_TIMEOUT: float = 5.0
    EMAIL_FROM: str = "no-reply@example.com"

    # 購読
    CONSUMER_GROUP: str = "notification"
    CONSUMER_NAME: str = Field("notification-1", description="Unique per process")
    SUBSCRIBED_TOPICS: list[str] = ["identity_events", "order_events", "payment_events"]


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
