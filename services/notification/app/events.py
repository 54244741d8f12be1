"""
Notification Service — 受信イベントのペイロード

発行側のモデルは import せず、通知に必要な項目だけを読む。
余分な項目は無視される。
"""

from decimal import Decimal

from pydantic import BaseModel

USER_CREATED = "UserCreated"
ORDER_CREATED = "OrderCreated"
ORDER_CANCELLED = "OrderCancelled"
PAYMENT_COMPLETED = "PaymentCompleted"
PAYMENT_FAILED = "PaymentFailed"

# order_events に流れてくるが通知はしない
IGNORED_TYPES = (
    "OrderConfirmed",
    "OrderShipped",
    "OrderDelivered",
    "OrderAddressUpdated",
)


class Money(BaseModel):
    amount: Decimal
    currency: str


class UserCreated(BaseModel):
    user_id: str
    email: str
    first_name: str
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class OrderCreated(BaseModel):
    order_id: str
    user_id: str
    total: Money
    lines: list[dict] = []


class OrderCancelled(BaseModel):
    order_id: str
    user_id: str
    reason: str = ""
    total: Money


class PaymentCompleted(BaseModel):
    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    payment_id: str | None = None


class PaymentFailed(BaseModel):
    order_id: str
    user_id: str
    payment_id: str | None = None
    reason: str = ""
