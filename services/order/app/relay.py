"""
Order Service — Outbox リレーの単独起動

    python -m services.order.app.relay

API プロセスとは別プロセスで動かす。複数起動すると集約単位の順序が
保証されなくなるため、リレーは 1 つだけ動かすこと。
"""

import asyncio
import signal

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.common.broker import RedisStreamBroker
from services.common.log_config import configure_logging

from .config import get_settings
from .publisher import OutboxPublisher


async def run() -> None:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    redis_pool = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    publisher = OutboxPublisher(
        async_sessionmaker(engine, expire_on_commit=False),
        RedisStreamBroker(redis_pool),
        topic_for=lambda _event_type: settings.ORDER_EVENTS_TOPIC,
        batch_size=settings.OUTBOX_BATCH_SIZE,
        poll_interval=settings.OUTBOX_POLL_INTERVAL,
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await publisher.run(shutdown_event)
    finally:
        await redis_pool.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run())
