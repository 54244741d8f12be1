"""
Order Service — イベント定義

イベントは過去形で命名し、不変として扱う。
ここで定義したモデルを JSON 化したものが DomainEvent.payload になる。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

ORDER_CREATED = "OrderCreated"
ORDER_CANCELLED = "OrderCancelled"
ORDER_CONFIRMED = "OrderConfirmed"
ORDER_SHIPPED = "OrderShipped"
ORDER_DELIVERED = "OrderDelivered"
ORDER_ADDRESS_UPDATED = "OrderAddressUpdated"


class MoneyPayload(BaseModel):
    amount: Decimal
    currency: str


class OrderLinePayload(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    currency: str
    line_total: Decimal


class AddressPayload(BaseModel):
    street: str
    city: str
    state: str
    pincode: str
    country: str


class OrderCreated(BaseModel):
    """注文が作成された (価格スナップショット付き)"""
    order_id: str
    user_id: str
    lines: list[OrderLinePayload]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: MoneyPayload
    shipping_address: AddressPayload
    created_at: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた"""
    order_id: str
    user_id: str
    reason: str
    lines: list[OrderLinePayload]
    total: MoneyPayload
    cancelled_at: datetime


class OrderStatusChanged(BaseModel):
    """外部フルフィルメントによる遷移 (Confirmed / Shipped / Delivered)"""
    order_id: str
    user_id: str
    status: str
    timestamp: datetime


class OrderAddressUpdated(BaseModel):
    """配送先住所が変更された (PENDING の間のみ)"""
    order_id: str
    user_id: str
    shipping_address: AddressPayload
    updated_at: datetime
