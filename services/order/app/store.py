"""
Order Service — 注文ストア

注文集約の読み書き。書き込みは必ず Outbox への追記とセットで行い、
呼び出し側が開いた 1 つのトランザクションの中で実行される。

更新は version による楽観的ロック:
  UPDATE orders ... WHERE id = :id AND version = :expected
が 0 行なら他のリクエストが先に更新している。
"""

import json

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import outbox
from .domain import (
    Order,
    OrderLine,
    OrderStatus,
    PriceBreakdown,
    ShippingAddress,
)
from .errors import ConcurrentModification
from .schema import order_lines, orders

AGGREGATE_TYPE = "Order"


async def insert_order(session: AsyncSession, order: Order) -> None:
    """新規注文と OrderCreated を書く。"""
    await session.execute(
        insert(orders).values(
            id=order.id,
            user_id=order.user_id,
            status=order.status.value,
            currency=order.price.currency,
            subtotal=order.price.subtotal,
            tax=order.price.tax,
            shipping=order.price.shipping,
            total=order.price.total,
            shipping_address=order.shipping_address.model_dump_json(),
            idempotency_key=order.idempotency_key,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
    )
    await session.execute(
        insert(order_lines),
        [
            {
                "order_id": order.id,
                "line_no": line_no,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "currency": line.currency,
            }
            for line_no, line in enumerate(order.lines, start=1)
        ],
    )
    await _append_events(session, order)


async def save_changes(
    session: AsyncSession, order: Order, expected_version: int
) -> None:
    """状態 / 住所の変更と、それに対応するイベントを書く。"""
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order.id, orders.c.version == expected_version)
        .values(
            status=order.status.value,
            shipping_address=order.shipping_address.model_dump_json(),
            cancel_reason=order.cancel_reason,
            version=order.version,
            updated_at=order.updated_at,
        )
    )
    if result.rowcount != 1:
        raise ConcurrentModification(order.id)
    await _append_events(session, order)


async def _append_events(session: AsyncSession, order: Order) -> None:
    for event_type, sequence, payload in order.pull_events():
        await outbox.append(
            session,
            AGGREGATE_TYPE,
            order.id,
            event_type,
            sequence,
            payload,
            now=order.updated_at,
        )


async def load_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return await _hydrate(session, row)


async def find_by_idempotency_key(
    session: AsyncSession, user_id: str, idempotency_key: str
) -> Order | None:
    result = await session.execute(
        select(orders).where(
            orders.c.user_id == user_id,
            orders.c.idempotency_key == idempotency_key,
        )
    )
    row = result.fetchone()
    if not row:
        return None
    return await _hydrate(session, row)


async def list_for_user(
    session: AsyncSession, user_id: str, offset: int, limit: int
) -> list[Order]:
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc(), orders.c.id)
        .offset(offset)
        .limit(limit)
    )
    return [await _hydrate(session, row) for row in result.fetchall()]


async def count_for_user(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(orders).where(orders.c.user_id == user_id)
    )
    return result.scalar_one()


async def _hydrate(session: AsyncSession, row) -> Order:
    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == row.id)
        .order_by(order_lines.c.line_no)
    )
    lines = tuple(
        OrderLine(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            currency=line.currency,
        )
        for line in result.fetchall()
    )
    return Order(
        id=row.id,
        user_id=row.user_id,
        lines=lines,
        price=PriceBreakdown(
            subtotal=row.subtotal,
            tax=row.tax,
            shipping=row.shipping,
            currency=row.currency,
        ),
        shipping_address=ShippingAddress(**json.loads(row.shipping_address)),
        status=OrderStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        version=row.version,
        idempotency_key=row.idempotency_key,
        cancel_reason=row.cancel_reason,
    )
