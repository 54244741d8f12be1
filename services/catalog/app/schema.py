"""
Catalog Service — テーブル定義

products.stock は「今すぐ確保できる在庫数」。
確保 (HELD) した時点で減り、解放 / 期限切れで戻る。
確定 (COMMITTED) は減らしたまま恒久化するだけ。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("seller_id", String(64), nullable=True),
    Column("title", String(255), nullable=False),
    Column("price_amount", Numeric(12, 2), nullable=False),
    Column("price_currency", String(3), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

reservations = Table(
    "reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(64), nullable=False),
    Column("order_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "product_id", name="uq_reservations_order_product"),
    Index("ix_reservations_status_expires", "status", "expires_at"),
)
