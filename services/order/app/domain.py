"""
Order Service — 注文集約 (Order Aggregate) と価格スナップショット

状態遷移:
    PENDING   → CONFIRMED / CANCELLED
    PENDING   → SHIPPED   (外部フルフィルメント)
    CONFIRMED → SHIPPED   (外部フルフィルメント)
    SHIPPED   → DELIVERED (外部フルフィルメント)

PENDING を離れた注文は明細と金額を変更できない。
配送先住所は PENDING の間だけ変更できる。
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from . import events
from .errors import (
    EmptyCart,
    InsufficientStock,
    InvalidStateTransition,
    MixedCurrency,
    ProductUnavailable,
)

CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


# 遷移先 → 遷移元として許される状態
_ALLOWED_FROM: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PENDING}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.PENDING}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.SHIPPED}),
}


class ShippingAddress(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    pincode: str = Field(min_length=1)
    country: str = Field(min_length=1)


class OrderRequest(BaseModel):
    """注文リクエスト (永続化しない)"""

    user_id: str
    shipping_address: ShippingAddress
    idempotency_key: str | None = None


# ── 外部スナップショット ──────────────────────────


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class CartSnapshot:
    lines: tuple[CartLine, ...] = ()

    @property
    def product_ids(self) -> list[str]:
        # 順序を保ったまま重複を除く
        return list(dict.fromkeys(line.product_id for line in self.lines))

    def demand(self) -> dict[str, int]:
        """商品ごとの合計数量 (同じ商品が複数行にあっても 1 つにまとめる)"""
        totals: dict[str, int] = {}
        for line in self.lines:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
        return totals

    def __len__(self) -> int:
        return len(self.lines)


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    def to_dict(self) -> dict:
        return {"amount": str(quantize(self.amount)), "currency": self.currency}


@dataclass(frozen=True)
class ProductQuote:
    product_id: str
    price: Money
    stock: int


# ── 注文集約 ──────────────────────────────────────


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    quantity: int
    unit_price: Decimal
    currency: str

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": str(quantize(self.unit_price)),
            "currency": self.currency,
            "line_total": str(self.line_total),
        }


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    currency: str

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax + self.shipping


def price_cart(
    cart: CartSnapshot,
    quotes: dict[str, ProductQuote],
    tax_rate: Decimal,
    shipping_fee: Decimal,
) -> tuple[list[OrderLine], PriceBreakdown]:
    """
    カートと見積りから明細と金額スナップショットを作る。

    すべての明細を検証してから結果を返す (一部だけの注文は作らない)。
    """
    if not cart.lines:
        raise EmptyCart()

    for product_id, quantity in cart.demand().items():
        quote = quotes.get(product_id)
        if quote is None:
            raise ProductUnavailable(product_id)
        if quote.stock < quantity:
            raise InsufficientStock(product_id, quantity, quote.stock)

    lines: list[OrderLine] = []
    for cart_line in cart.lines:
        quote = quotes[cart_line.product_id]
        lines.append(
            OrderLine(
                product_id=cart_line.product_id,
                quantity=cart_line.quantity,
                unit_price=quote.price.amount,
                currency=quote.price.currency,
            )
        )

    currencies = {line.currency for line in lines}
    if len(currencies) > 1:
        raise MixedCurrency(currencies)

    subtotal = sum((line.line_total for line in lines), Decimal("0"))
    breakdown = PriceBreakdown(
        subtotal=quantize(subtotal),
        tax=quantize(subtotal * tax_rate),
        shipping=quantize(shipping_fee),
        currency=currencies.pop(),
    )
    return lines, breakdown


@dataclass
class Order:
    """
    注文集約。

    version は楽観的ロックのトークン。永続化層が
    UPDATE ... WHERE version = :expected で競合を検知する。
    """

    id: str
    user_id: str
    lines: tuple[OrderLine, ...]
    price: PriceBreakdown
    shipping_address: ShippingAddress
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    version: int = 1
    idempotency_key: str | None = None
    cancel_reason: str | None = None
    _pending_events: list[tuple[str, int, dict]] = field(
        default_factory=list, repr=False, compare=False
    )

    @classmethod
    def place(
        cls,
        request: OrderRequest,
        lines: list[OrderLine],
        price: PriceBreakdown,
        now: datetime,
        order_id: str | None = None,
    ) -> "Order":
        order = cls(
            id=order_id or str(uuid4()),
            user_id=request.user_id,
            lines=tuple(lines),
            price=price,
            shipping_address=request.shipping_address,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
            idempotency_key=request.idempotency_key,
        )
        order._record(
            events.ORDER_CREATED,
            events.OrderCreated(
                order_id=order.id,
                user_id=order.user_id,
                lines=order._line_payloads(),
                subtotal=price.subtotal,
                tax=price.tax,
                shipping=price.shipping,
                total=order._total_payload(),
                shipping_address=order.shipping_address.model_dump(),
                created_at=now,
            ),
        )
        return order

    @property
    def total(self) -> Money:
        return Money(self.price.total, self.price.currency)

    # ── 状態遷移 ──────────────────────────────────

    def _transition(self, target: OrderStatus, now: datetime) -> None:
        if self.status not in _ALLOWED_FROM[target]:
            raise InvalidStateTransition(self.status.value, target.value)
        self.status = target
        self.updated_at = now
        self.version += 1

    def cancel(self, reason: str, now: datetime) -> None:
        self._transition(OrderStatus.CANCELLED, now)
        self.cancel_reason = reason
        self._record(
            events.ORDER_CANCELLED,
            events.OrderCancelled(
                order_id=self.id,
                user_id=self.user_id,
                reason=reason,
                lines=self._line_payloads(),
                total=self._total_payload(),
                cancelled_at=now,
            ),
        )

    def confirm(self, now: datetime) -> None:
        self._transition(OrderStatus.CONFIRMED, now)
        self._record(events.ORDER_CONFIRMED, self._status_changed(now))

    def ship(self, now: datetime) -> None:
        self._transition(OrderStatus.SHIPPED, now)
        self._record(events.ORDER_SHIPPED, self._status_changed(now))

    def deliver(self, now: datetime) -> None:
        self._transition(OrderStatus.DELIVERED, now)
        self._record(events.ORDER_DELIVERED, self._status_changed(now))

    def update_shipping_address(self, address: ShippingAddress, now: datetime) -> None:
        if self.status is not OrderStatus.PENDING:
            raise InvalidStateTransition(self.status.value, "ADDRESS_UPDATE")
        self.shipping_address = address
        self.updated_at = now
        self.version += 1
        self._record(
            events.ORDER_ADDRESS_UPDATED,
            events.OrderAddressUpdated(
                order_id=self.id,
                user_id=self.user_id,
                shipping_address=address.model_dump(),
                updated_at=now,
            ),
        )

    # ── イベント ──────────────────────────────────

    def _record(self, event_type: str, payload: BaseModel) -> None:
        # (種別, 集約バージョン, JSON 化したペイロード)
        self._pending_events.append(
            (event_type, self.version, payload.model_dump(mode="json"))
        )

    def pull_events(self) -> list[tuple[str, int, dict]]:
        """未発行のイベントを取り出す (Outbox に書くのは永続化層)。"""
        pending, self._pending_events = self._pending_events, []
        return pending

    def _line_payloads(self) -> list[events.OrderLinePayload]:
        return [events.OrderLinePayload(**line.to_dict()) for line in self.lines]

    def _total_payload(self) -> events.MoneyPayload:
        return events.MoneyPayload(
            amount=self.price.total, currency=self.price.currency
        )

    def _status_changed(self, now: datetime) -> events.OrderStatusChanged:
        return events.OrderStatusChanged(
            order_id=self.id,
            user_id=self.user_id,
            status=self.status.value,
            timestamp=now,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": [line.to_dict() for line in self.lines],
            "subtotal": str(self.price.subtotal),
            "tax": str(self.price.tax),
            "shipping": str(self.price.shipping),
            "total_price": self.total.to_dict(),
            "shipping_address": self.shipping_address.model_dump(),
            "status": self.status.value,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
