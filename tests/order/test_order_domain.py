from datetime import datetime, timezone
from decimal import Decimal

import pytest

from services.order.app import events
from services.order.app.domain import (
    CartLine,
    CartSnapshot,
    Money,
    Order,
    OrderRequest,
    OrderStatus,
    ProductQuote,
    ShippingAddress,
    price_cart,
    quantize,
)
from services.order.app.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidStateTransition,
    MixedCurrency,
    ProductUnavailable,
)

TAX = Decimal("0.10")
SHIPPING = Decimal("5.00")
NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def quote(pid: str, amount: str, stock: int = 10, currency: str = "INR") -> ProductQuote:
    return ProductQuote(pid, Money(Decimal(amount), currency), stock)


def cart(*items: tuple[str, int]) -> CartSnapshot:
    return CartSnapshot(tuple(CartLine(pid, qty) for pid, qty in items))


def placed_order(address: dict) -> Order:
    lines, price = price_cart(cart(("p1", 2)), {"p1": quote("p1", "10.00")}, TAX, SHIPPING)
    request = OrderRequest(user_id="u1", shipping_address=ShippingAddress(**address))
    return Order.place(request, lines, price, NOW)


# ── 価格計算 ─────────────────────────────────────


def test_price_breakdown_for_single_line():
    lines, price = price_cart(cart(("p1", 2)), {"p1": quote("p1", "10.00")}, TAX, SHIPPING)

    assert len(lines) == 1
    assert lines[0].unit_price == Decimal("10.00")
    assert price.subtotal == Decimal("20.00")
    assert price.tax == Decimal("2.00")
    assert price.shipping == Decimal("5.00")
    assert price.total == Decimal("27.00")
    assert price.currency == "INR"


def test_tax_is_rounded_half_up_to_cents():
    _, price = price_cart(cart(("p1", 1)), {"p1": quote("p1", "0.25")}, TAX, SHIPPING)

    # 0.025 → 0.03
    assert price.tax == Decimal("0.03")
    assert quantize(Decimal("1.005")) == Decimal("1.01")


def test_empty_cart_is_rejected():
    with pytest.raises(EmptyCart) as exc_info:
        price_cart(cart(), {}, TAX, SHIPPING)
    assert exc_info.value.field == "cart.items"


def test_missing_quote_is_product_unavailable():
    with pytest.raises(ProductUnavailable) as exc_info:
        price_cart(cart(("p1", 1), ("p2", 1)), {"p1": quote("p1", "1.00")}, TAX, SHIPPING)
    assert exc_info.value.product_id == "p2"


def test_quantity_above_stock_is_insufficient_stock():
    with pytest.raises(InsufficientStock) as exc_info:
        price_cart(cart(("p1", 6)), {"p1": quote("p1", "1.00", stock=5)}, TAX, SHIPPING)
    assert exc_info.value.requested == 6
    assert exc_info.value.available == 5


def test_repeated_product_lines_are_checked_against_combined_quantity():
    with pytest.raises(InsufficientStock):
        price_cart(
            cart(("p1", 3), ("p1", 3)), {"p1": quote("p1", "1.00", stock=5)}, TAX, SHIPPING
        )


def test_mixed_currencies_are_rejected():
    quotes = {"p1": quote("p1", "1.00"), "p2": quote("p2", "1.00", currency="USD")}
    with pytest.raises(MixedCurrency):
        price_cart(cart(("p1", 1), ("p2", 1)), quotes, TAX, SHIPPING)


# ── 状態遷移 ─────────────────────────────────────


def test_place_records_order_created(address):
    order = placed_order(address)

    assert order.status is OrderStatus.PENDING
    assert order.version == 1
    [(event_type, sequence, payload)] = order.pull_events()
    assert event_type == events.ORDER_CREATED
    assert sequence == 1
    assert payload["total"] == {"amount": "27.00", "currency": "INR"}
    assert payload["lines"][0]["unit_price"] == "10.00"
    assert order.pull_events() == []


def test_cancel_from_pending(address):
    order = placed_order(address)
    order.pull_events()

    order.cancel("changed my mind", NOW)

    assert order.status is OrderStatus.CANCELLED
    assert order.version == 2
    [(event_type, sequence, payload)] = order.pull_events()
    assert event_type == events.ORDER_CANCELLED
    assert sequence == 2
    assert payload["reason"] == "changed my mind"


def test_cancel_twice_is_invalid(address):
    order = placed_order(address)
    order.cancel("first", NOW)

    with pytest.raises(InvalidStateTransition) as exc_info:
        order.cancel("second", NOW)
    assert exc_info.value.current == "CANCELLED"


@pytest.mark.parametrize(
    "steps, expected",
    [
        (["confirm"], OrderStatus.CONFIRMED),
        (["ship"], OrderStatus.SHIPPED),
        (["confirm", "ship"], OrderStatus.SHIPPED),
        (["confirm", "ship", "deliver"], OrderStatus.DELIVERED),
    ],
)
def test_fulfillment_paths(address, steps, expected):
    order = placed_order(address)
    for step in steps:
        getattr(order, step)(NOW)
    assert order.status is expected


@pytest.mark.parametrize(
    "steps, illegal",
    [
        (["confirm"], "cancel"),
        (["ship"], "confirm"),
        ([], "deliver"),
        (["ship", "deliver"], "ship"),
    ],
)
def test_illegal_transitions(address, steps, illegal):
    order = placed_order(address)
    for step in steps:
        getattr(order, step)(NOW)
    with pytest.raises(InvalidStateTransition):
        if illegal == "cancel":
            order.cancel("", NOW)
        else:
            getattr(order, illegal)(NOW)


def test_address_change_only_while_pending(address):
    order = placed_order(address)
    new_address = ShippingAddress(**{**address, "city": "Mysuru"})

    order.update_shipping_address(new_address, NOW)
    assert order.shipping_address.city == "Mysuru"

    order.confirm(NOW)
    with pytest.raises(InvalidStateTransition):
        order.update_shipping_address(ShippingAddress(**address), NOW)


def test_line_snapshot_does_not_change_with_later_quotes(address):
    order = placed_order(address)
    before = order.to_dict()["items"]

    # 見積りが変わっても既存注文の明細には影響しない
    price_cart(cart(("p1", 2)), {"p1": quote("p1", "99.00")}, TAX, SHIPPING)

    assert order.to_dict()["items"] == before
