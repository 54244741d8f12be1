"""
Order Service — クエリハンドラ (CQRS の Read 側)
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import outbox, store
from .errors import Forbidden, OrderNotFound


async def get_order(session: AsyncSession, order_id: str, requester: str) -> dict:
    """本人の注文だけを返す。"""
    order = await store.load_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order.user_id != requester:
        raise Forbidden()
    return order.to_dict()


async def list_orders(
    session: AsyncSession, user_id: str, page: int = 1, limit: int = 10
) -> dict:
    """自分の注文一覧 (新しい順、ページング付き)"""
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    orders = await store.list_for_user(session, user_id, (page - 1) * limit, limit)
    total = await store.count_for_user(session, user_id)
    return {
        "orders": [order.to_dict() for order in orders],
        "meta": {"total": total, "page": page, "limit": limit},
    }


async def get_order_events(
    session: AsyncSession, order_id: str, requester: str
) -> list[dict]:
    """注文に紐づく Outbox エントリ (発行状況の確認用)"""
    await get_order(session, order_id, requester)
    entries = await outbox.load_for_aggregate(session, order_id)
    return [
        {
            "event_id": str(entry.event_id),
            "event_type": entry.event_type,
            "sequence": entry.sequence,
            "created_at": entry.created_at.isoformat(),
            "published_at": entry.published_at.isoformat()
            if entry.published_at
            else None,
            "publish_attempts": entry.publish_attempts,
        }
        for entry in entries
    ]
