"""
Seller Dashboard Service — イベント投影 (Projection)

CQRS の Read 側: ユーザー・商品・注文のイベントを販売者向けの
テーブルに投影する。

集約をまたいだ順序は保証されないため:
  - 注文明細は product_id のまま保存し、商品とはクエリ時に結合する
  - 注文の状態は version が大きいイベントだけを反映する
    (OrderCancelled が OrderCreated より先に届いても巻き戻らない)
  - 古いイベントでも、まだ埋まっていない項目 (明細・金額・作成日時) は補完する
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.events import DomainEvent
from services.common.replicator import IdempotentReplicator

from . import events
from .schema import order_lines, orders, processed_events, products, users

logger = logging.getLogger(__name__)


async def _project_user_created(session: AsyncSession, event: DomainEvent) -> None:
    data = events.UserCreated.model_validate(event.payload)
    values = {
        "email": data.email,
        "full_name": data.full_name,
        "role": data.role,
        "updated_at": event.occurred_at,
    }
    exists = await session.execute(
        select(users.c.user_id).where(users.c.user_id == data.user_id)
    )
    if exists.first() is None:
        await session.execute(insert(users).values(user_id=data.user_id, **values))
    else:
        await session.execute(
            update(users).where(users.c.user_id == data.user_id).values(**values)
        )


async def _project_product_created(session: AsyncSession, event: DomainEvent) -> None:
    data = events.ProductCreated.model_validate(event.payload)
    values = {
        "seller_id": data.seller_id,
        "title": data.title,
        "price_amount": data.price.amount,
        "price_currency": data.price.currency,
        "stock": data.stock,
        "updated_at": event.occurred_at,
    }
    exists = await session.execute(
        select(products.c.id).where(products.c.id == data.product_id)
    )
    if exists.first() is None:
        await session.execute(insert(products).values(id=data.product_id, **values))
    else:
        await session.execute(
            update(products).where(products.c.id == data.product_id).values(**values)
        )


async def _project_order_created(session: AsyncSession, event: DomainEvent) -> None:
    data = events.OrderCreated.model_validate(event.payload)
    await _apply_order_state(
        session,
        event,
        user_id=data.user_id,
        status="PENDING",
        total=data.total,
        lines=data.lines,
        created_at=data.created_at,
    )


async def _project_order_cancelled(session: AsyncSession, event: DomainEvent) -> None:
    data = events.OrderCancelled.model_validate(event.payload)
    await _apply_order_state(
        session,
        event,
        user_id=data.user_id,
        status="CANCELLED",
        total=data.total,
        lines=data.lines,
    )


async def _project_order_status_changed(
    session: AsyncSession, event: DomainEvent
) -> None:
    data = events.OrderStatusChanged.model_validate(event.payload)
    await _apply_order_state(session, event, user_id=data.user_id, status=data.status)


async def _apply_order_state(
    session: AsyncSession,
    event: DomainEvent,
    *,
    user_id: str,
    status: str,
    total: events.Money | None = None,
    lines: list[events.OrderLine] | None = None,
    created_at: datetime | None = None,
) -> None:
    result = await session.execute(select(orders).where(orders.c.id == event.aggregate_id))
    current = result.fetchone()

    if current is None:
        await session.execute(
            insert(orders).values(
                id=event.aggregate_id,
                user_id=user_id,
                status=status,
                total_amount=total.amount if total else None,
                currency=total.currency if total else None,
                version=event.sequence,
                created_at=created_at,
                updated_at=event.occurred_at,
            )
        )
        if lines:
            await _insert_lines(session, event.aggregate_id, lines)
        return

    if event.sequence > current.version:
        await session.execute(
            update(orders)
            .where(orders.c.id == event.aggregate_id)
            .values(status=status, version=event.sequence, updated_at=event.occurred_at)
        )
    else:
        logger.info(
            "Order %s: %s v%d is older than v%d; status kept",
            event.aggregate_id,
            event.type,
            event.sequence,
            current.version,
        )

    backfill = {}
    if total and current.total_amount is None:
        backfill.update(total_amount=total.amount, currency=total.currency)
    if created_at and current.created_at is None:
        backfill["created_at"] = created_at
    if backfill:
        await session.execute(
            update(orders).where(orders.c.id == event.aggregate_id).values(**backfill)
        )
    if lines and not await _has_lines(session, event.aggregate_id):
        await _insert_lines(session, event.aggregate_id, lines)


async def _has_lines(session: AsyncSession, order_id: str) -> bool:
    result = await session.execute(
        select(order_lines.c.line_no).where(order_lines.c.order_id == order_id).limit(1)
    )
    return result.first() is not None


async def _insert_lines(
    session: AsyncSession, order_id: str, lines: list[events.OrderLine]
) -> None:
    await session.execute(
        insert(order_lines),
        [
            {
                "order_id": order_id,
                "line_no": line_no,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": Decimal(line.unit_price),
                "currency": line.currency,
            }
            for line_no, line in enumerate(lines, start=1)
        ],
    )


HANDLERS = {
    events.USER_CREATED: _project_user_created,
    events.PRODUCT_CREATED: _project_product_created,
    events.ORDER_CREATED: _project_order_created,
    events.ORDER_CANCELLED: _project_order_cancelled,
    events.ORDER_CONFIRMED: _project_order_status_changed,
    events.ORDER_SHIPPED: _project_order_status_changed,
    events.ORDER_DELIVERED: _project_order_status_changed,
}


def build_replicator(session_factory: async_sessionmaker) -> IdempotentReplicator:
    return IdempotentReplicator(
        "seller_dashboard",
        session_factory,
        processed_events,
        HANDLERS,
        ignored_types=events.IGNORED_TYPES,
    )
