"""
Order placement through to the downstream read models:
saga → outbox → relay → broker → notification / seller dashboard.
"""

from decimal import Decimal

from services.common.events import DomainEvent
from services.notification.app.projections import build_replicator as notification_replicator
from services.order.app import commands
from services.order.app.domain import OrderRequest, ShippingAddress
from services.order.app.publisher import OutboxPublisher
from services.order.app.saga import PlaceOrderSaga
from services.seller_dashboard.app import queries as dashboard_queries
from services.seller_dashboard.app.projections import build_replicator as dashboard_replicator
from tests.fakes import drain


async def test_order_reaches_notification_once_despite_redelivery(
    order_db, notification_db, cart, catalog, broker, email_sender, address
):
    cart.set_cart("u1", [("p1", 2)])
    catalog.add_product("p1", "10.00", "INR", stock=5)
    replicator = notification_replicator(notification_db, email_sender)
    await replicator.apply(
        DomainEvent(
            aggregate_id="u1",
            type="UserCreated",
            payload={"user_id": "u1", "email": "u1@example.com", "first_name": "Asha"},
        )
    )

    result = await PlaceOrderSaga(
        order_db, cart, catalog, tax_rate=Decimal("0.10"), shipping_fee=Decimal("5.00")
    ).execute(OrderRequest(user_id="u1", shipping_address=ShippingAddress(**address)))
    order = result.order
    assert order.price.subtotal == Decimal("20.00")
    assert order.price.tax == Decimal("2.00")
    assert order.price.shipping == Decimal("5.00")
    assert order.total.amount == Decimal("27.00")
    assert order.total.currency == "INR"

    publisher = OutboxPublisher(order_db, broker, topic_for=lambda _: "order_events")
    assert await publisher.publish_pending() == 1

    # コンシューマが ack する前に 3 回落ちた
    await broker.subscribe(["order_events"], "notification")
    for _ in range(3):
        for delivery in await broker.fetch(["order_events"], "notification", "c1"):
            await replicator.apply(delivery.event)
    await drain(broker, ["order_events"], "notification", replicator.apply)

    order_mails = [
        (message, key) for message, key in email_sender.sent if message.subject == "Order Placed!"
    ]
    assert len(order_mails) == 1
    assert order.id in order_mails[0][0].html
    assert broker.pending["notification"] == {}


async def test_seller_dashboard_follows_order_lifecycle(
    order_db, dashboard_db, cart, catalog, broker, address
):
    cart.set_cart("u1", [("p1", 2)])
    catalog.add_product("p1", "10.00", "INR", stock=5)
    replicator = dashboard_replicator(dashboard_db)
    await replicator.apply(
        DomainEvent(
            aggregate_id="p1",
            type="ProductCreated",
            payload={
                "product_id": "p1",
                "seller_id": "s1",
                "title": "Tea",
                "price": {"amount": "10.00", "currency": "INR"},
                "stock": 5,
            },
        )
    )
    result = await PlaceOrderSaga(
        order_db, cart, catalog, tax_rate=Decimal("0.10"), shipping_fee=Decimal("5.00")
    ).execute(OrderRequest(user_id="u1", shipping_address=ShippingAddress(**address)))
    publisher = OutboxPublisher(order_db, broker, topic_for=lambda _: "order_events")

    await publisher.publish_pending()
    await drain(broker, ["order_events"], "seller_dashboard", replicator.apply)
    async with dashboard_db() as session:
        before = await dashboard_queries.seller_metrics(session, "s1")

    async with order_db() as session:
        await commands.cancel_order(session, result.order.id, "u1")
    await publisher.publish_pending()
    await drain(broker, ["order_events"], "seller_dashboard", replicator.apply)
    async with dashboard_db() as session:
        after = await dashboard_queries.seller_metrics(session, "s1")
        replica = await dashboard_queries.get_order(session, result.order.id)

    assert before["totals"] == {"orders": 1, "units_sold": 2, "revenue": {"INR": "20.00"}}
    assert after["totals"] == {"orders": 0, "units_sold": 0, "revenue": {}}
    assert replica["status"] == "CANCELLED"
    assert replica["version"] == 2
