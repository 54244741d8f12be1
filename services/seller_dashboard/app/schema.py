"""
Seller Dashboard Service — テーブル定義 (販売者向けリードモデル)

order_lines は product_id だけを持ち、商品情報とはクエリ時に結合する。
商品のイベントより先に注文が届いても投影は失敗しない。

orders.version は注文集約の最後に適用したバージョン (ハイウォーターマーク)。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)

from services.common.replicator import make_processed_events_table

metadata = MetaData()

processed_events = make_processed_events_table(metadata)

users = Table(
    "users",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("full_name", String(255), nullable=False),
    Column("role", String(16), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("seller_id", String(64), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("price_amount", Numeric(12, 2), nullable=False),
    Column("price_currency", String(3), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    # 金額と作成日時は OrderCreated / OrderCancelled が届くまで不明
    Column("total_amount", Numeric(12, 2), nullable=True),
    Column("currency", String(3), nullable=True),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("order_id", String(64), ForeignKey("orders.id"), primary_key=True),
    Column("line_no", Integer, primary_key=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
)
