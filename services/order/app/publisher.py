"""
Order Service — Outbox リレー (イベント発行プロセス)

リクエスト処理とは独立してポーリングし、未発行の Outbox エントリを
ブローカーへ流す。

  - 同じ集約のエントリは作成順に発行する (集約単位の FIFO)
  - 発行に失敗した集約は、そのバッチの残りのエントリを飛ばす
  - ブローカーの受理を確認してから published_at をセットする
  - 発行後・マーク前にクラッシュした場合は再起動後に同じ event_id で再発行する
    (コンシューマ側で重複排除される)
"""

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common.broker import Broker

from . import outbox

logger = logging.getLogger(__name__)


class OutboxPublisher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        broker: Broker,
        topic_for: Callable[[str], str],
        batch_size: int = 100,
        poll_interval: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.broker = broker
        self.topic_for = topic_for
        self.batch_size = batch_size
        self.poll_interval = poll_interval

    async def publish_pending(self) -> int:
        """1 バッチ分を発行し、発行できた件数を返す。"""
        async with self.session_factory() as session:
            entries = await outbox.fetch_pending(session, self.batch_size)

        published = 0
        blocked: set[str] = set()
        for entry in entries:
            if entry.aggregate_id in blocked:
                continue
            try:
                await self.broker.publish(
                    self.topic_for(entry.event_type), entry.to_event()
                )
            except Exception as e:
                blocked.add(entry.aggregate_id)
                logger.warning(
                    "Failed to publish outbox entry %s (%s %s): %s",
                    entry.id,
                    entry.event_type,
                    entry.aggregate_id,
                    e,
                )
                async with self.session_factory() as session:
                    async with session.begin():
                        await outbox.record_failure(session, entry.id, repr(e))
                continue

            async with self.session_factory() as session:
                async with session.begin():
                    await outbox.mark_published(session, entry.id)
            published += 1
            logger.debug("Published %s %s", entry.event_type, entry.event_id)

        if published:
            logger.info("Outbox relay published %d event(s)", published)
        return published

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまでポーリングを続ける。"""
        logger.info("Outbox relay started")
        while not shutdown_event.is_set():
            try:
                published = await self.publish_pending()
            except Exception:
                # DB 障害など。次の周期でやり直す
                logger.exception("Outbox relay cycle failed")
                published = 0
            if published < self.batch_size:
                try:
                    await asyncio.wait_for(
                        shutdown_event.wait(), timeout=self.poll_interval
                    )
                except asyncio.TimeoutError:
                    pass
        logger.info("Outbox relay stopped")
