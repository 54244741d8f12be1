"""
Seller Dashboard Service — クエリハンドラ (CQRS Read 側)

注文明細と商品はここで結合する。商品より先に届いた注文も、
商品が投影された時点で集計に含まれるようになる。
"""

from collections import defaultdict
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_lines, orders, products, users


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


async def list_seller_products(session: AsyncSession, seller_id: str) -> list[dict]:
    result = await session.execute(
        select(products).where(products.c.seller_id == seller_id).order_by(products.c.title)
    )
    return [
        {
            "id": row.id,
            "title": row.title,
            "price": {"amount": _money(row.price_amount), "currency": row.price_currency},
            "stock": row.stock,
        }
        for row in result.fetchall()
    ]


async def seller_metrics(session: AsyncSession, seller_id: str) -> dict:
    """
    販売者ごとの売上集計

    キャンセルされていない注文の明細だけを数える。
    売上は通貨ごとに分けて合計する。
    """
    product_rows = (
        await session.execute(select(products).where(products.c.seller_id == seller_id))
    ).fetchall()
    by_product = {
        row.id: {
            "product_id": row.id,
            "title": row.title,
            "units_sold": 0,
            "revenue": defaultdict(Decimal),
        }
        for row in product_rows
    }

    order_ids: set[str] = set()
    if by_product:
        line_rows = (
            await session.execute(
                select(
                    order_lines.c.order_id,
                    order_lines.c.product_id,
                    order_lines.c.quantity,
                    order_lines.c.unit_price,
                    order_lines.c.currency,
                )
                .join(orders, orders.c.id == order_lines.c.order_id)
                .where(
                    order_lines.c.product_id.in_(list(by_product)),
                    orders.c.status != "CANCELLED",
                )
            )
        ).fetchall()
        for line in line_rows:
            entry = by_product[line.product_id]
            entry["units_sold"] += line.quantity
            entry["revenue"][line.currency] += Decimal(line.unit_price) * line.quantity
            order_ids.add(line.order_id)

    total_units = 0
    total_revenue: dict[str, Decimal] = defaultdict(Decimal)
    product_stats = []
    for entry in sorted(by_product.values(), key=lambda e: e["product_id"]):
        total_units += entry["units_sold"]
        for currency, amount in entry["revenue"].items():
            total_revenue[currency] += amount
        product_stats.append(
            {
                **entry,
                "revenue": {c: _money(a) for c, a in sorted(entry["revenue"].items())},
            }
        )

    return {
        "seller_id": seller_id,
        "products": product_stats,
        "totals": {
            "orders": len(order_ids),
            "units_sold": total_units,
            "revenue": {c: _money(a) for c, a in sorted(total_revenue.items())},
        },
    }


async def get_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.user_id == user_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "user_id": row.user_id,
        "email": row.email,
        "full_name": row.full_name,
        "role": row.role,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    row = (
        await session.execute(select(orders).where(orders.c.id == order_id))
    ).fetchone()
    if not row:
        return None
    lines = (
        await session.execute(
            select(order_lines)
            .where(order_lines.c.order_id == order_id)
            .order_by(order_lines.c.line_no)
        )
    ).fetchall()
    return {
        "order_id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "version": row.version,
        "total": (
            {"amount": _money(row.total_amount), "currency": row.currency}
            if row.total_amount is not None
            else None
        ),
        "items": [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": _money(line.unit_price),
                "currency": line.currency,
            }
            for line in lines
        ],
    }
