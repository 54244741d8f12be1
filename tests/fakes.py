"""
In-process stand-ins for the collaborators of each service.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal
from uuid import uuid4

from services.common.broker import Delivery
from services.common.events import DomainEvent
from services.notification.app.sender import EmailDeliveryError, EmailMessage
from services.order.app.accessors import Reservation
from services.order.app.domain import CartLine, CartSnapshot, Money, ProductQuote
from services.order.app.errors import ProductUnavailable, UpstreamUnavailable


class FakeCart:
    def __init__(self) -> None:
        self.carts: dict[str, list[tuple[str, int]]] = {}
        self.error: Exception | None = None
        self.delay = 0.0

    def set_cart(self, user_id: str, items: list[tuple[str, int]]) -> None:
        self.carts[user_id] = items

    async def fetch_cart(self, user_id: str) -> CartSnapshot:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return CartSnapshot(
            tuple(CartLine(pid, qty) for pid, qty in self.carts.get(user_id, []))
        )


class FakeCatalog:
    """Reserves against an in-memory stock table with the same rules as the catalog."""

    def __init__(self) -> None:
        self.products: dict[str, tuple[Money, int]] = {}
        self.reservations: dict[str, dict] = {}
        self.reserve_errors: dict[str, Exception] = {}
        self.reserve_delay = 0.0
        self.reserve_delays: dict[str, float] = {}
        self.released: list[str] = []
        self.committed: list[str] = []

    def add_product(
        self, product_id: str, amount: str, currency: str = "INR", stock: int = 10
    ) -> None:
        self.products[product_id] = (Money(Decimal(amount), currency), stock)

    def stock(self, product_id: str) -> int:
        return self.products[product_id][1]

    def _set_stock(self, product_id: str, stock: int) -> None:
        price, _ = self.products[product_id]
        self.products[product_id] = (price, stock)

    async def quote_products(self, product_ids: list[str]) -> dict[str, ProductQuote]:
        quotes = {}
        for pid in product_ids:
            if pid not in self.products:
                raise ProductUnavailable(pid)
            price, stock = self.products[pid]
            quotes[pid] = ProductQuote(pid, price, stock)
        return quotes

    async def reserve(
        self, product_id: str, quantity: int, order_id: str, ttl_seconds: int
    ) -> Reservation | None:
        delay = self.reserve_delays.get(product_id, self.reserve_delay)
        if delay:
            await asyncio.sleep(delay)
        if product_id in self.reserve_errors:
            raise self.reserve_errors[product_id]
        if product_id not in self.products:
            raise ProductUnavailable(product_id)
        stock = self.stock(product_id)
        if stock < quantity:
            return None
        self._set_stock(product_id, stock - quantity)
        reservation_id = str(uuid4())
        self.reservations[reservation_id] = {
            "product_id": product_id,
            "quantity": quantity,
            "order_id": order_id,
            "status": "HELD",
        }
        return Reservation(reservation_id, product_id, quantity)

    async def release(self, reservation_id: str) -> None:
        self.released.append(reservation_id)
        reservation = self.reservations[reservation_id]
        if reservation["status"] == "HELD":
            reservation["status"] = "RELEASED"
            pid = reservation["product_id"]
            self._set_stock(pid, self.stock(pid) + reservation["quantity"])

    async def commit(self, reservation_id: str) -> None:
        self.committed.append(reservation_id)
        self.reservations[reservation_id]["status"] = "COMMITTED"

    def held(self) -> list[dict]:
        return [r for r in self.reservations.values() if r["status"] == "HELD"]


class FailingCatalog(FakeCatalog):
    """Every call fails as an exhausted retry budget would."""

    async def quote_products(self, product_ids):
        raise UpstreamUnavailable("catalog-service")


class InMemoryBroker:
    """
    At-least-once broker: every fetch hands out unacknowledged messages
    again (visibility timeout of zero) before any new ones.
    """

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, DomainEvent]]] = {}
        self.cursors: dict[tuple[str, str], int] = {}
        self.pending: dict[str, dict[str, Delivery]] = {}
        self.publish_failures: list[Exception] = []
        self._ids = itertools.count(1)

    async def publish(self, topic: str, event: DomainEvent) -> str:
        if self.publish_failures:
            raise self.publish_failures.pop(0)
        message_id = f"{next(self._ids)}-0"
        self.streams.setdefault(topic, []).append((message_id, event))
        return message_id

    async def subscribe(self, topics: Sequence[str], group: str) -> None:
        for topic in topics:
            self.cursors.setdefault((topic, group), 0)
        self.pending.setdefault(group, {})

    async def fetch(
        self, topics: Sequence[str], group: str, consumer: str
    ) -> list[Delivery]:
        pending = self.pending.setdefault(group, {})
        redelivered = [
            Delivery(d.topic, d.message_id, d.event, redelivered=True)
            for d in pending.values()
        ]
        fresh = []
        for topic in topics:
            stream = self.streams.get(topic, [])
            cursor = self.cursors.get((topic, group), 0)
            for message_id, event in stream[cursor:]:
                delivery = Delivery(topic, message_id, event, redelivered=False)
                pending[message_id] = delivery
                fresh.append(delivery)
            self.cursors[(topic, group)] = len(stream)
        return redelivered + fresh

    async def ack(self, group: str, delivery: Delivery) -> None:
        self.pending.get(group, {}).pop(delivery.message_id, None)

    def events(self, topic: str) -> list[DomainEvent]:
        return [event for _, event in self.streams.get(topic, [])]


async def drain(
    broker: InMemoryBroker,
    topics: Sequence[str],
    group: str,
    handler: Callable[[DomainEvent], Awaitable[object]],
) -> None:
    """Deliver everything currently in the streams once, acking on success."""
    await broker.subscribe(topics, group)
    for delivery in await broker.fetch(topics, group, "test"):
        await handler(delivery.event)
        await broker.ack(group, delivery)


class RecordingEmailSender:
    """Records every send; `delivered` mimics a gateway that dedups by key."""

    def __init__(self) -> None:
        self.sent: list[tuple[EmailMessage, str]] = []
        self.failures = 0

    async def send(self, message: EmailMessage, idempotency_key: str) -> None:
        if self.failures:
            self.failures -= 1
            raise EmailDeliveryError("gateway down")
        self.sent.append((message, idempotency_key))

    @property
    def delivered(self) -> dict[str, EmailMessage]:
        return {key: message for message, key in self.sent}

    async def aclose(self) -> None:
        pass
