"""
Common — 冪等レプリケータ (Idempotent Replicator)

at-least-once 配送のもとで、イベントをリードモデルへ
「効果として exactly-once」に適用する。

  1. processed_events に event_id を INSERT (主キー違反なら DUPLICATE)
  2. 同じトランザクションで投影処理を実行
  3. どちらかが失敗すればロールバック → 再配送で安全にやり直せる

マーカーの INSERT をトランザクションの最初の文にしておくと、
同じイベントを並行して処理するコンシューマは書き込みロックで直列化される。

処理済みテーブルは各コンシューマが自分の DB に持つ (make_processed_events_table)。
"""

import enum
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping

from pydantic import ValidationError
from sqlalchemy import Column, DateTime, MetaData, String, Table, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .events import DomainEvent, utcnow

logger = logging.getLogger(__name__)


class ApplyResult(str, enum.Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


class RejectedEvent(Exception):
    """投影できないイベント (再配送しても結果は変わらない)"""


class _AlreadyApplied(Exception):
    pass


ProjectionHandler = Callable[[AsyncSession, DomainEvent], Awaitable[None]]


def make_processed_events_table(metadata: MetaData) -> Table:
    return Table(
        "processed_events",
        metadata,
        Column("event_id", String(36), primary_key=True),
        Column("event_type", String(64), nullable=False),
        Column("aggregate_id", String(64), nullable=False),
        Column("processed_at", DateTime(timezone=True), nullable=False),
    )


class IdempotentReplicator:
    """
    イベント種別ごとの投影ハンドラを、重複排除の境界の内側で実行する。

    ハンドラの無いイベント種別は REJECTED。ignored_types に挙げた種別は
    購読トピックに流れてくるが投影しないだけなので DEBUG でしか記録しない。

    ハンドラが RejectedEvent / ValidationError を投げた場合も REJECTED を返す
    (呼び出し側は ack してよい)。それ以外の例外はそのまま伝播させ、
    メッセージは ack されずに再配送される。
    """

    def __init__(
        self,
        name: str,
        session_factory: async_sessionmaker,
        processed_events: Table,
        handlers: Mapping[str, ProjectionHandler],
        ignored_types: Iterable[str] = (),
    ) -> None:
        self.name = name
        self.session_factory = session_factory
        self.processed_events = processed_events
        self.handlers = dict(handlers)
        self.ignored_types = frozenset(ignored_types)

    async def apply(self, event: DomainEvent) -> ApplyResult:
        handler = self.handlers.get(event.type)
        if handler is None:
            if event.type in self.ignored_types:
                logger.debug("%s: ignoring %s %s", self.name, event.type, event.event_id)
            else:
                logger.warning(
                    "%s: rejecting unsupported event type %s (%s)",
                    self.name,
                    event.type,
                    event.event_id,
                )
            return ApplyResult.REJECTED

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._mark_processed(session, event)
                    await handler(session, event)
        except _AlreadyApplied:
            logger.info(
                "%s: duplicate %s %s skipped", self.name, event.type, event.event_id
            )
            return ApplyResult.DUPLICATE
        except (RejectedEvent, ValidationError) as e:
            logger.warning(
                "%s: rejected %s %s: %s", self.name, event.type, event.event_id, e
            )
            return ApplyResult.REJECTED

        logger.info("%s: applied %s %s", self.name, event.type, event.event_id)
        return ApplyResult.APPLIED

    async def _mark_processed(self, session: AsyncSession, event: DomainEvent) -> None:
        try:
            await session.execute(
                insert(self.processed_events).values(
                    event_id=str(event.event_id),
                    event_type=event.type,
                    aggregate_id=event.aggregate_id,
                    processed_at=utcnow(),
                )
            )
        except IntegrityError as e:
            raise _AlreadyApplied() from e
