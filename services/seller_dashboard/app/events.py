"""
Seller Dashboard Service — 受信イベントのペイロード
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

USER_CREATED = "UserCreated"
PRODUCT_CREATED = "ProductCreated"
ORDER_CREATED = "OrderCreated"
ORDER_CANCELLED = "OrderCancelled"
ORDER_CONFIRMED = "OrderConfirmed"
ORDER_SHIPPED = "OrderShipped"
ORDER_DELIVERED = "OrderDelivered"

# 住所はダッシュボードに載せない
IGNORED_TYPES = ("OrderAddressUpdated",)


class Money(BaseModel):
    amount: Decimal
    currency: str


class UserCreated(BaseModel):
    user_id: str
    email: str
    first_name: str
    last_name: str = ""
    role: str = "user"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ProductCreated(BaseModel):
    product_id: str
    seller_id: str
    title: str
    price: Money
    stock: int = Field(0, ge=0)


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: Decimal
    currency: str


class OrderCreated(BaseModel):
    order_id: str
    user_id: str
    lines: list[OrderLine]
    total: Money
    created_at: datetime


class OrderCancelled(BaseModel):
    order_id: str
    user_id: str
    lines: list[OrderLine]
    total: Money
    cancelled_at: datetime


class OrderStatusChanged(BaseModel):
    order_id: str
    user_id: str
    status: str
    timestamp: datetime
