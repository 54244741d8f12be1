"""
Seller Dashboard Service — Redis Streams サブスクライバー

identity / catalog / order の各ストリームを購読して投影する。
"""

import asyncio

import redis.asyncio as aioredis

from services.common.broker import RedisStreamBroker, consume
from services.common.replicator import IdempotentReplicator

from .config import Settings


async def run_subscriber(
    settings: Settings,
    replicator: IdempotentReplicator,
    shutdown_event: asyncio.Event,
) -> None:
    redis_conn = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    broker = RedisStreamBroker(
        redis_conn,
        visibility_timeout_ms=settings.BROKER_VISIBILITY_TIMEOUT_MS,
        batch_size=settings.BROKER_BATCH_SIZE,
        block_ms=settings.BROKER_BLOCK_MS,
    )
    try:
        await consume(
            broker,
            settings.SUBSCRIBED_TOPICS,
            settings.CONSUMER_GROUP,
            settings.CONSUMER_NAME,
            replicator.apply,
            shutdown_event,
        )
    finally:
        await redis_conn.aclose()
