"""
Order Service — Transactional Outbox

「DB に保存したがイベントを発行していない」「発行したが保存していない」
という二重書き込み問題を避けるため、イベントは集約の変更と同じ
トランザクションで outbox テーブルに書く。発行はリレー (publisher.py) が
後から非同期に行う。

published_at はブローカーの受理を確認した後にだけ、一度だけセットする。
"""

import json
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import DomainEvent, utcnow

from .schema import outbox


@dataclass(frozen=True)
class OutboxEntry:
    id: int
    event_id: UUID
    aggregate_type: str
    aggregate_id: str
    event_type: str
    sequence: int
    payload: dict
    created_at: datetime
    published_at: datetime | None
    publish_attempts: int

    def to_event(self) -> DomainEvent:
        """ワイヤー形式へ。再発行しても event_id は変わらない。"""
        return DomainEvent(
            event_id=self.event_id,
            aggregate_id=self.aggregate_id,
            type=self.event_type,
            sequence=self.sequence,
            occurred_at=self.created_at,
            payload=self.payload,
        )


async def append(
    session: AsyncSession,
    aggregate_type: str,
    aggregate_id: str,
    event_type: str,
    sequence: int,
    payload: dict,
    now: datetime | None = None,
) -> UUID:
    """
    Outbox にイベントを追記する。コミットは呼び出し側のトランザクションに任せる。
    """
    event_id = uuid4()
    await session.execute(
        insert(outbox).values(
            event_id=str(event_id),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            sequence=sequence,
            payload=json.dumps(payload, default=str),
            created_at=now or utcnow(),
            publish_attempts=0,
        )
    )
    return event_id


async def fetch_pending(session: AsyncSession, limit: int = 100) -> list[OutboxEntry]:
    """未発行のエントリを作成順 (id 昇順) に返す。"""
    result = await session.execute(
        select(outbox)
        .where(outbox.c.published_at.is_(None))
        .order_by(outbox.c.id)
        .limit(limit)
    )
    return [_to_entry(row) for row in result.fetchall()]


async def mark_published(
    session: AsyncSession, entry_id: int, now: datetime | None = None
) -> bool:
    """published_at を一度だけセットする。既にセット済みなら False。"""
    result = await session.execute(
        update(outbox)
        .where(outbox.c.id == entry_id, outbox.c.published_at.is_(None))
        .values(
            published_at=now or utcnow(),
            publish_attempts=outbox.c.publish_attempts + 1,
            last_error=None,
        )
    )
    return result.rowcount == 1


async def record_failure(session: AsyncSession, entry_id: int, error: str) -> None:
    await session.execute(
        update(outbox)
        .where(outbox.c.id == entry_id)
        .values(
            publish_attempts=outbox.c.publish_attempts + 1,
            last_error=error[:1000],
        )
    )


async def load_for_aggregate(
    session: AsyncSession, aggregate_id: str
) -> list[OutboxEntry]:
    """指定集約のエントリを作成順に返す (デバッグ用)。"""
    result = await session.execute(
        select(outbox)
        .where(outbox.c.aggregate_id == aggregate_id)
        .order_by(outbox.c.id)
    )
    return [_to_entry(row) for row in result.fetchall()]


def _to_entry(row) -> OutboxEntry:
    return OutboxEntry(
        id=row.id,
        event_id=UUID(row.event_id),
        aggregate_type=row.aggregate_type,
        aggregate_id=row.aggregate_id,
        event_type=row.event_type,
        sequence=row.sequence,
        payload=json.loads(row.payload) if isinstance(row.payload, str) else row.payload,
        created_at=row.created_at,
        published_at=row.published_at,
        publish_attempts=row.publish_attempts,
    )
