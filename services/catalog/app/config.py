"""
Catalog Service — 設定
"""

from services.common.config import ServiceSettings


class Settings(ServiceSettings):
    SERVICE_NAME: str = "catalog-service"

    MAX_RESERVATION_TTL_SECONDS: int = 3600
    EXPIRY_SWEEP_INTERVAL: float = 5.0


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
