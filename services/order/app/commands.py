"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文作成は saga.py が担当する。ここでは作成後の状態変更を扱う。

どのコマンドも:
  1. 注文を読み込み、集約で遷移を検証
  2. version による楽観的ロックで更新
  3. 対応するイベントを同じトランザクションで Outbox に追記
"""

import logging
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import utcnow

from . import store
from .domain import Order, ShippingAddress
from .errors import Forbidden, OrderNotFound

logger = logging.getLogger(__name__)


async def _load_for_update(session: AsyncSession, order_id: str) -> Order:
    order = await store.load_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _ensure_owner(order: Order, requester: str) -> None:
    if order.user_id != requester:
        raise Forbidden()


async def cancel_order(
    session: AsyncSession,
    order_id: str,
    requester: str,
    reason: str = "",
) -> Order:
    """
    注文キャンセルコマンド

    PENDING の注文だけがキャンセルできる。それ以外は InvalidStateTransition。
    在庫は戻さない (確定後のキャンセルは状態変更のみ)。
    """
    async with session.begin():
        order = await _load_for_update(session, order_id)
        _ensure_owner(order, requester)
        expected = order.version
        order.cancel(reason or "Cancelled by customer", utcnow())
        await store.save_changes(session, order, expected)
    logger.info("Order %s cancelled by %s", order_id, requester)
    return order


async def update_shipping_address(
    session: AsyncSession,
    order_id: str,
    requester: str,
    address: ShippingAddress,
) -> Order:
    """配送先住所の変更 (PENDING の間のみ)"""
    async with session.begin():
        order = await _load_for_update(session, order_id)
        _ensure_owner(order, requester)
        expected = order.version
        order.update_shipping_address(address, utcnow())
        await store.save_changes(session, order, expected)
    logger.info("Order %s shipping address updated", order_id)
    return order


async def _fulfillment_transition(
    session: AsyncSession,
    order_id: str,
    apply: Callable[[Order], None],
) -> Order:
    async with session.begin():
        order = await _load_for_update(session, order_id)
        expected = order.version
        apply(order)
        await store.save_changes(session, order, expected)
    logger.info("Order %s moved to %s", order_id, order.status.value)
    return order


async def confirm_order(session: AsyncSession, order_id: str) -> Order:
    """注文確定 (PENDING → CONFIRMED)"""
    return await _fulfillment_transition(
        session, order_id, lambda order: order.confirm(utcnow())
    )


async def ship_order(session: AsyncSession, order_id: str) -> Order:
    """出荷 (PENDING / CONFIRMED → SHIPPED)。外部フルフィルメントから呼ばれる。"""
    return await _fulfillment_transition(
        session, order_id, lambda order: order.ship(utcnow())
    )


async def deliver_order(session: AsyncSession, order_id: str) -> Order:
    """配達完了 (SHIPPED → DELIVERED)。外部フルフィルメントから呼ばれる。"""
    return await _fulfillment_transition(
        session, order_id, lambda order: order.deliver(utcnow())
    )
