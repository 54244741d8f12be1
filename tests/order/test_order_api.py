import httpx
import pytest

from services.order.app.config import Settings
from services.order.app.main import app


@pytest.fixture
async def client(order_db, cart, catalog):
    app.state.settings = Settings(SAGA_DEADLINE_SECONDS=5.0)
    app.state.session_factory = order_db
    app.state.cart = cart
    app.state.catalog = catalog
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://order") as c:
        yield c


@pytest.fixture
def stocked(cart, catalog):
    cart.set_cart("u1", [("p1", 2)])
    catalog.add_product("p1", "10.00", "INR", stock=5)


async def place(client, address, user_id="u1", **headers):
    return await client.post(
        "/commands/orders",
        json={"shipping_address": address},
        headers={"X-User-Id": user_id, **headers},
    )


async def test_place_order(client, stocked, address):
    response = await place(client, address)

    assert response.status_code == 201
    body = response.json()
    assert body["replayed"] is False
    assert body["order"]["status"] == "PENDING"
    assert body["order"]["subtotal"] == "20.00"
    assert body["order"]["tax"] == "2.00"
    assert body["order"]["shipping"] == "5.00"
    assert body["order"]["total_price"] == {"amount": "27.00", "currency": "INR"}
    assert [step["action"] for step in body["saga_log"]][0] == "FetchCart"


async def test_empty_cart_is_422_with_rule(client, address):
    response = await place(client, address)

    assert response.status_code == 422
    assert response.json() == {
        "rule": "EmptyCart",
        "detail": "Cart has no items",
        "field": "cart.items",
    }


async def test_insufficient_stock_is_409(client, cart, catalog, address):
    cart.set_cart("u1", [("p1", 9)])
    catalog.add_product("p1", "10.00", stock=5)

    response = await place(client, address)

    assert response.status_code == 409
    assert response.json()["rule"] == "InsufficientStock"


async def test_invalid_address_is_rejected(client, stocked, address):
    response = await place(client, {**address, "city": ""})

    assert response.status_code == 422


async def test_idempotency_key_header(client, stocked, address):
    first = await place(client, address, **{"Idempotency-Key": "abc"})
    second = await place(client, address, **{"Idempotency-Key": "abc"})

    assert second.status_code == 201
    assert second.json()["replayed"] is True
    assert second.json()["order"]["id"] == first.json()["order"]["id"]


async def test_cancel_and_cancel_again(client, stocked, address):
    order_id = (await place(client, address)).json()["order"]["id"]

    first = await client.post(
        f"/commands/orders/{order_id}/cancel",
        json={"reason": "changed my mind"},
        headers={"X-User-Id": "u1"},
    )
    second = await client.post(
        f"/commands/orders/{order_id}/cancel", json={}, headers={"X-User-Id": "u1"}
    )

    assert first.status_code == 200
    assert first.json()["order"]["status"] == "CANCELLED"
    assert second.status_code == 409
    assert second.json()["rule"] == "InvalidStateTransition"


async def test_other_users_order_is_forbidden(client, stocked, address):
    order_id = (await place(client, address)).json()["order"]["id"]

    response = await client.get(f"/queries/orders/{order_id}", headers={"X-User-Id": "u2"})

    assert response.status_code == 403


async def test_unknown_order_is_404(client):
    response = await client.get("/queries/orders/nope", headers={"X-User-Id": "u1"})

    assert response.status_code == 404
    assert response.json()["rule"] == "OrderNotFound"


async def test_address_update_and_events(client, stocked, address):
    order_id = (await place(client, address)).json()["order"]["id"]

    response = await client.patch(
        f"/commands/orders/{order_id}/address",
        json={"shipping_address": {**address, "pincode": "560002"}},
        headers={"X-User-Id": "u1"},
    )
    events = await client.get(
        f"/queries/orders/{order_id}/events", headers={"X-User-Id": "u1"}
    )

    assert response.status_code == 200
    assert response.json()["order"]["shipping_address"]["pincode"] == "560002"
    assert [e["event_type"] for e in events.json()] == ["OrderCreated", "OrderAddressUpdated"]
    assert all(e["published_at"] is None for e in events.json())


async def test_fulfillment_endpoints(client, stocked, address):
    order_id = (await place(client, address)).json()["order"]["id"]

    confirmed = await client.post(f"/commands/orders/{order_id}/confirm")
    shipped = await client.post(f"/commands/orders/{order_id}/ship")
    delivered = await client.post(f"/commands/orders/{order_id}/deliver")
    again = await client.post(f"/commands/orders/{order_id}/ship")

    assert [r.json().get("status") for r in (confirmed, shipped, delivered)] == [
        "CONFIRMED",
        "SHIPPED",
        "DELIVERED",
    ]
    assert again.status_code == 409


async def test_list_orders(client, stocked, address):
    await place(client, address)

    response = await client.get("/queries/orders?page=1&limit=5", headers={"X-User-Id": "u1"})

    body = response.json()
    assert body["meta"] == {"total": 1, "page": 1, "limit": 5}
    assert body["orders"][0]["user_id"] == "u1"


async def test_missing_user_header_is_422(client, stocked, address):
    response = await client.post("/commands/orders", json={"shipping_address": address})

    assert response.status_code == 422
