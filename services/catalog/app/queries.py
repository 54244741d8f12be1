"""
Catalog Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import products, reservations


def _money(amount) -> str:
    return f"{amount:.2f}"


async def quote_products(session: AsyncSession, product_ids: list[str]) -> dict:
    """
    見積り: {productId: {"price": {"amount", "currency"}, "stock"}}

    存在しない ID は結果に含めない (欠けていることの判断は呼び出し側)。
    """
    if not product_ids:
        return {}
    result = await session.execute(
        select(products).where(products.c.id.in_(product_ids))
    )
    return {
        row.id: {
            "price": {"amount": _money(row.price_amount), "currency": row.price_currency},
            "stock": row.stock,
        }
        for row in result.fetchall()
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "seller_id": row.seller_id,
        "title": row.title,
        "price": {"amount": _money(row.price_amount), "currency": row.price_currency},
        "stock": row.stock,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_reservation(session: AsyncSession, reservation_id: str) -> dict | None:
    result = await session.execute(
        select(reservations).where(reservations.c.id == reservation_id)
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
        "expires_at": row.expires_at.isoformat(),
    }
