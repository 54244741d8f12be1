"""
Catalog Service — コマンドハンドラ (CQRS Write 側)

在庫の一時確保 (Reserve)・解放 (Release)・確定 (Commit)・期限切れ処理。

複数の Saga が同時に同じ商品を確保しようとするため、在庫の減算は
必ず条件付きの 1 文で行う:

    UPDATE products SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

0 行更新なら在庫不足。読んでから書く方式だと同時実行で売り越す。
状態遷移も同様に WHERE status = 'HELD' を条件にし、解放と期限切れが
同時に走っても在庫が二重に戻らないようにする。
"""

import enum
import logging
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import utcnow

from .schema import products, reservations

logger = logging.getLogger(__name__)


class ReservationStatus(str, enum.Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"


class CatalogError(Exception):
    status_code = 400


class ProductNotFound(CatalogError):
    status_code = 404


class ReservationNotFound(CatalogError):
    status_code = 404


class OutOfStock(CatalogError):
    status_code = 409


class ReservationClosed(CatalogError):
    """既に解放済みの確保は確定できない"""

    status_code = 409


async def reserve(
    session: AsyncSession,
    product_id: str,
    order_id: str,
    quantity: int,
    ttl_seconds: int,
    now: datetime | None = None,
) -> dict:
    """
    在庫引き当て (一時確保) コマンド

    (order_id, product_id) ごとに 1 件だけ。同じ組み合わせで再度呼ばれた
    場合 (タイムアウト後のリトライ) は既存の確保をそのまま返す。
    """
    now = now or utcnow()
    reservation_id = str(uuid4())
    try:
        async with session.begin():
            # 確保行を先に書く: 一意制約でリトライを検知し、書き込みロックを先に取る
            await session.execute(
                insert(reservations).values(
                    id=reservation_id,
                    product_id=product_id,
                    order_id=order_id,
                    quantity=quantity,
                    status=ReservationStatus.HELD.value,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                    created_at=now,
                    updated_at=now,
                )
            )
            result = await session.execute(
                update(products)
                .where(products.c.id == product_id, products.c.stock >= quantity)
                .values(stock=products.c.stock - quantity, updated_at=now)
            )
            if result.rowcount != 1:
                available = await _current_stock(session, product_id)
                if available is None:
                    raise ProductNotFound(f"Product {product_id} not found")
                raise OutOfStock(
                    f"Insufficient stock: requested={quantity}, available={available}"
                )
    except IntegrityError:
        existing = await _find_by_order(session, order_id, product_id)
        if existing is None:
            raise
        logger.info(
            "Reservation for order %s / product %s already exists", order_id, product_id
        )
        return existing

    logger.info(
        "Reserved %d x %s for order %s (%s)", quantity, product_id, order_id, reservation_id
    )
    return {
        "reservation_id": reservation_id,
        "product_id": product_id,
        "order_id": order_id,
        "quantity": quantity,
        "status": ReservationStatus.HELD.value,
    }


async def release(session: AsyncSession, reservation_id: str) -> dict:
    """
    在庫解放コマンド (Saga の補償トランザクション)

    HELD のときだけ在庫を戻す。既に解放・期限切れなら何もしない (冪等)。
    """
    now = utcnow()
    async with session.begin():
        row = (
            await session.execute(
                update(reservations)
                .where(
                    reservations.c.id == reservation_id,
                    reservations.c.status == ReservationStatus.HELD.value,
                )
                .values(status=ReservationStatus.RELEASED.value, updated_at=now)
                .returning(reservations.c.product_id, reservations.c.quantity)
            )
        ).first()
        if row is not None:
            await _restock(session, row.product_id, row.quantity, now)
            logger.info("Released reservation %s", reservation_id)
            return {"reservation_id": reservation_id, "status": "RELEASED"}

        status = await _status_of(session, reservation_id)
    if status is None:
        raise ReservationNotFound(f"Reservation {reservation_id} not found")
    return {"reservation_id": reservation_id, "status": status}


async def commit(session: AsyncSession, reservation_id: str) -> dict:
    """
    確保を恒久的な在庫引き当てに切り替える。

    期限切れで在庫が既に戻っていた場合は、条件付き減算をもう一度試みる。
    """
    now = utcnow()
    async with session.begin():
        row = (
            await session.execute(
                update(reservations)
                .where(
                    reservations.c.id == reservation_id,
                    reservations.c.status == ReservationStatus.HELD.value,
                )
                .values(status=ReservationStatus.COMMITTED.value, updated_at=now)
                .returning(reservations.c.id)
            )
        ).first()
        if row is None:
            await _commit_non_held(session, reservation_id, now)
    logger.info("Committed reservation %s", reservation_id)
    return {"reservation_id": reservation_id, "status": "COMMITTED"}


async def _commit_non_held(
    session: AsyncSession, reservation_id: str, now: datetime
) -> None:
    result = await session.execute(
        select(reservations).where(reservations.c.id == reservation_id)
    )
    reservation = result.fetchone()
    if reservation is None:
        raise ReservationNotFound(f"Reservation {reservation_id} not found")
    if reservation.status == ReservationStatus.COMMITTED.value:
        return
    if reservation.status == ReservationStatus.RELEASED.value:
        raise ReservationClosed(f"Reservation {reservation_id} was released")

    # EXPIRED: 在庫は戻っているので取り直す
    result = await session.execute(
        update(products)
        .where(
            products.c.id == reservation.product_id,
            products.c.stock >= reservation.quantity,
        )
        .values(stock=products.c.stock - reservation.quantity, updated_at=now)
    )
    if result.rowcount != 1:
        raise OutOfStock(
            f"Reservation {reservation_id} expired and stock is no longer available"
        )
    await session.execute(
        update(reservations)
        .where(reservations.c.id == reservation_id)
        .values(status=ReservationStatus.COMMITTED.value, updated_at=now)
    )
    logger.warning("Re-acquired expired reservation %s on commit", reservation_id)


async def expire_reservations(session: AsyncSession, now: datetime | None = None) -> int:
    """期限切れの HELD をまとめて EXPIRED にし、在庫を戻す。"""
    now = now or utcnow()
    async with session.begin():
        rows = (
            await session.execute(
                update(reservations)
                .where(
                    reservations.c.status == ReservationStatus.HELD.value,
                    reservations.c.expires_at < now,
                )
                .values(status=ReservationStatus.EXPIRED.value, updated_at=now)
                .returning(reservations.c.product_id, reservations.c.quantity)
            )
        ).fetchall()
        for row in rows:
            await _restock(session, row.product_id, row.quantity, now)
    if rows:
        logger.info("Expired %d stale reservation(s)", len(rows))
    return len(rows)


async def _restock(
    session: AsyncSession, product_id: str, quantity: int, now: datetime
) -> None:
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + quantity, updated_at=now)
    )


async def _current_stock(session: AsyncSession, product_id: str) -> int | None:
    result = await session.execute(
        select(products.c.stock).where(products.c.id == product_id)
    )
    return result.scalar_one_or_none()


async def _status_of(session: AsyncSession, reservation_id: str) -> str | None:
    result = await session.execute(
        select(reservations.c.status).where(reservations.c.id == reservation_id)
    )
    return result.scalar_one_or_none()


async def _find_by_order(
    session: AsyncSession, order_id: str, product_id: str
) -> dict | None:
    result = await session.execute(
        select(reservations).where(
            reservations.c.order_id == order_id,
            reservations.c.product_id == product_id,
        )
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "reservation_id": row.id,
        "product_id": row.product_id,
        "order_id": row.order_id,
        "quantity": row.quantity,
        "status": row.status,
    }
