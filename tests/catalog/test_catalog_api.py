import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import insert

from services.catalog.app import commands
from services.catalog.app.config import Settings
from services.catalog.app.main import app, run_expiry_sweeper
from services.catalog.app.schema import products
from services.common.events import utcnow


@pytest.fixture
async def client(catalog_db):
    async with catalog_db() as session:
        async with session.begin():
            await session.execute(
                insert(products).values(
                    id="p1",
                    seller_id="s1",
                    title="Tea",
                    price_amount=Decimal("10.00"),
                    price_currency="INR",
                    stock=5,
                    updated_at=utcnow(),
                )
            )
    app.state.settings = Settings(MAX_RESERVATION_TTL_SECONDS=600)
    app.state.session_factory = catalog_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://catalog") as c:
        yield c


async def test_reserve_release_cycle(client):
    created = await client.post(
        "/commands/reservations",
        json={"product_id": "p1", "order_id": "o1", "quantity": 2, "ttl_seconds": 60},
    )
    reservation_id = created.json()["reservation_id"]
    released = await client.post(f"/commands/reservations/{reservation_id}/release")
    product = await client.get("/queries/products/p1")

    assert created.status_code == 201
    assert released.json()["status"] == "RELEASED"
    assert product.json()["stock"] == 5


async def test_reserve_conflict_is_409(client):
    response = await client.post(
        "/commands/reservations",
        json={"product_id": "p1", "order_id": "o1", "quantity": 6},
    )

    assert response.status_code == 409


async def test_reserve_unknown_product_is_404(client):
    response = await client.post(
        "/commands/reservations",
        json={"product_id": "ghost", "order_id": "o1", "quantity": 1},
    )

    assert response.status_code == 404


async def test_reserve_rejects_non_positive_quantity(client):
    response = await client.post(
        "/commands/reservations",
        json={"product_id": "p1", "order_id": "o1", "quantity": 0},
    )

    assert response.status_code == 422


async def test_ttl_is_capped(client):
    created = await client.post(
        "/commands/reservations",
        json={"product_id": "p1", "order_id": "o1", "quantity": 1, "ttl_seconds": 86400},
    )
    reservation = await client.get(
        f"/queries/reservations/{created.json()['reservation_id']}"
    )

    assert created.status_code == 201
    assert reservation.json()["status"] == "HELD"


async def test_quote_endpoint(client):
    response = await client.get("/queries/products/quote", params=[("ids", "p1"), ("ids", "x")])

    assert response.json() == {
        "p1": {"price": {"amount": "10.00", "currency": "INR"}, "stock": 5}
    }


async def test_commit_endpoint(client):
    created = await client.post(
        "/commands/reservations",
        json={"product_id": "p1", "order_id": "o1", "quantity": 1},
    )
    reservation_id = created.json()["reservation_id"]

    committed = await client.post(f"/commands/reservations/{reservation_id}/commit")
    missing = await client.post("/commands/reservations/nope/commit")

    assert committed.json() == {"reservation_id": reservation_id, "status": "COMMITTED"}
    assert missing.status_code == 404


async def test_expiry_sweeper_stops_on_shutdown(catalog_db, monkeypatch):
    calls = []

    async def fake_expire(session, now=None):
        calls.append(now)
        return 0

    monkeypatch.setattr(commands, "expire_reservations", fake_expire)
    shutdown_event = asyncio.Event()
    task = asyncio.create_task(run_expiry_sweeper(catalog_db, 0.01, shutdown_event))
    await asyncio.sleep(0.05)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(calls) >= 1
