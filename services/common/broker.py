"""
Common — ブローカークライアント (Redis Streams)

Redis Pub/Sub は fire-and-forget 方式で、購読者がダウンしている間の
イベントは失われる。ここでは Redis Streams + コンシューマグループを使い、
次の性質を持つトピックとして扱う:

  - publish: XADD が ID を返した時点で永続的に受理されたとみなす
  - 購読: XREADGROUP で受信し、処理完了後に XACK (手動 ack)
  - 再配送: ack されないまま visibility timeout を超えたエントリは
            XAUTOCLAIM で別のコンシューマ (または再起動後の自分) が再取得する

配送は at-least-once。コンシューマは event_id で重複排除すること。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import ResponseError

from .events import DomainEvent

logger = logging.getLogger(__name__)

EVENT_FIELD = "event"


@dataclass(frozen=True)
class Delivery:
    """1 件の受信メッセージ。ack に必要な情報を持つ。"""

    topic: str
    message_id: str
    event: DomainEvent
    redelivered: bool = False


@runtime_checkable
class Broker(Protocol):
    async def publish(self, topic: str, event: DomainEvent) -> str:
        ...

    async def subscribe(self, topics: Sequence[str], group: str) -> None:
        ...

    async def fetch(
        self, topics: Sequence[str], group: str, consumer: str
    ) -> list[Delivery]:
        ...

    async def ack(self, group: str, delivery: Delivery) -> None:
        ...


class RedisStreamBroker:
    """Redis Streams 上の永続トピック"""

    def __init__(
        self,
        redis: aioredis.Redis,
        visibility_timeout_ms: int = 30_000,
        batch_size: int = 10,
        block_ms: int = 1_000,
    ) -> None:
        self.redis = redis
        self.visibility_timeout_ms = visibility_timeout_ms
        self.batch_size = batch_size
        self.block_ms = block_ms

    async def publish(self, topic: str, event: DomainEvent) -> str:
        """イベントを追記し、Redis が払い出したエントリ ID を返す。"""
        message_id = await self.redis.xadd(topic, {EVENT_FIELD: event.to_wire()})
        return _decode(message_id)

    async def subscribe(self, topics: Sequence[str], group: str) -> None:
        """コンシューマグループを (無ければ) 作成する。"""
        for topic in topics:
            try:
                await self.redis.xgroup_create(topic, group, id="0", mkstream=True)
                logger.info("Created consumer group %s on %s", group, topic)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def fetch(
        self, topics: Sequence[str], group: str, consumer: str
    ) -> list[Delivery]:
        """
        まず放置された pending エントリを回収し、無ければ新着を待つ。
        """
        deliveries: list[Delivery] = []
        for topic in topics:
            deliveries.extend(await self._reclaim(topic, group, consumer))
        if deliveries:
            return deliveries

        response = await self.redis.xreadgroup(
            group,
            consumer,
            {topic: ">" for topic in topics},
            count=self.batch_size,
            block=self.block_ms,
        )
        for stream, messages in response or []:
            topic = _decode(stream)
            for message_id, fields in messages:
                delivery = await self._to_delivery(topic, group, message_id, fields)
                if delivery:
                    deliveries.append(delivery)
        return deliveries

    async def ack(self, group: str, delivery: Delivery) -> None:
        await self.redis.xack(delivery.topic, group, delivery.message_id)

    async def _reclaim(self, topic: str, group: str, consumer: str) -> list[Delivery]:
        result = await self.redis.xautoclaim(
            topic,
            group,
            consumer,
            min_idle_time=self.visibility_timeout_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        # redis-py: [next_start_id, [(id, fields), ...], (deleted ids)]
        claimed = result[1] if result else []
        deliveries = []
        for message_id, fields in claimed:
            if not fields:
                # ストリームから削除済みのエントリ
                continue
            delivery = await self._to_delivery(
                topic, group, message_id, fields, redelivered=True
            )
            if delivery:
                deliveries.append(delivery)
        if deliveries:
            logger.warning(
                "Reclaimed %d unacknowledged message(s) on %s", len(deliveries), topic
            )
        return deliveries

    async def _to_delivery(
        self,
        topic: str,
        group: str,
        message_id: Any,
        fields: dict,
        redelivered: bool = False,
    ) -> Delivery | None:
        message_id = _decode(message_id)
        raw = fields.get(EVENT_FIELD) or fields.get(EVENT_FIELD.encode())
        try:
            event = DomainEvent.from_wire(raw)
        except (ValidationError, TypeError):
            # 解釈できないメッセージは再配送しても直らないので捨てる
            logger.error("Dropping malformed message %s on %s", message_id, topic)
            await self.redis.xack(topic, group, message_id)
            return None
        return Delivery(topic, message_id, event, redelivered)


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


Handler = Callable[[DomainEvent], Awaitable[Any]]


async def consume(
    broker: Broker,
    topics: Sequence[str],
    group: str,
    consumer: str,
    handler: Handler,
    shutdown_event: asyncio.Event,
    idle_sleep: float = 0.1,
) -> None:
    """
    shutdown_event がセットされるまでイベントを受信して handler に渡す。

    handler が正常終了したメッセージだけを ack する。例外を投げた
    メッセージは ack せず、visibility timeout 後に再配送される。
    """
    await broker.subscribe(topics, group)
    logger.info("Consumer %s/%s subscribed to %s", group, consumer, ", ".join(topics))

    while not shutdown_event.is_set():
        deliveries = await broker.fetch(topics, group, consumer)
        if not deliveries:
            await asyncio.sleep(idle_sleep)
            continue
        for delivery in deliveries:
            try:
                await handler(delivery.event)
            except Exception:
                logger.exception(
                    "Failed to handle %s %s; leaving it for redelivery",
                    delivery.event.type,
                    delivery.event.event_id,
                )
                continue
            await broker.ack(group, delivery)
