import asyncio

import pytest

from services.order.app import outbox
from services.order.app.publisher import OutboxPublisher


def make_publisher(order_db, broker, batch_size: int = 100) -> OutboxPublisher:
    return OutboxPublisher(
        order_db,
        broker,
        topic_for=lambda _event_type: "order_events",
        batch_size=batch_size,
        poll_interval=0.01,
    )


async def append_events(order_db, *rows: tuple[str, str, int]) -> None:
    async with order_db() as session:
        async with session.begin():
            for aggregate_id, event_type, sequence in rows:
                await outbox.append(
                    session,
                    "Order",
                    aggregate_id,
                    event_type,
                    sequence,
                    {"order_id": aggregate_id},
                )


async def pending(order_db) -> list[outbox.OutboxEntry]:
    async with order_db() as session:
        return await outbox.fetch_pending(session)


async def test_publishes_in_creation_order(order_db, broker):
    await append_events(
        order_db,
        ("o1", "OrderCreated", 1),
        ("o2", "OrderCreated", 1),
        ("o1", "OrderCancelled", 2),
    )

    published = await make_publisher(order_db, broker).publish_pending()

    assert published == 3
    assert [(e.aggregate_id, e.type, e.sequence) for e in broker.events("order_events")] == [
        ("o1", "OrderCreated", 1),
        ("o2", "OrderCreated", 1),
        ("o1", "OrderCancelled", 2),
    ]
    assert await pending(order_db) == []


async def test_event_id_matches_outbox_entry(order_db, broker):
    await append_events(order_db, ("o1", "OrderCreated", 1))
    [entry] = await pending(order_db)

    await make_publisher(order_db, broker).publish_pending()

    [event] = broker.events("order_events")
    assert event.event_id == entry.event_id
    assert event.payload == {"order_id": "o1"}


async def test_failed_publish_holds_back_rest_of_aggregate(order_db, broker):
    await append_events(
        order_db,
        ("o1", "OrderCreated", 1),
        ("o2", "OrderCreated", 1),
        ("o1", "OrderCancelled", 2),
    )
    broker.publish_failures.append(ConnectionError("broker down"))

    published = await make_publisher(order_db, broker).publish_pending()

    # o1 の 1 件目が失敗 → o1 の 2 件目も出さない。o2 は出る
    assert published == 1
    assert [e.aggregate_id for e in broker.events("order_events")] == ["o2"]
    left = await pending(order_db)
    assert [(e.aggregate_id, e.sequence) for e in left] == [("o1", 1), ("o1", 2)]
    assert left[0].publish_attempts == 1

    # 次の周期で順番どおりに出る
    assert await make_publisher(order_db, broker).publish_pending() == 2
    assert [(e.aggregate_id, e.sequence) for e in broker.events("order_events")] == [
        ("o2", 1),
        ("o1", 1),
        ("o1", 2),
    ]


async def test_crash_before_mark_republishes_same_event(order_db, broker):
    await append_events(order_db, ("o1", "OrderCreated", 1))
    [entry] = await pending(order_db)
    # 発行だけして published_at をセットする前に落ちた状態
    await broker.publish("order_events", entry.to_event())

    await make_publisher(order_db, broker).publish_pending()

    first, second = broker.events("order_events")
    assert first.event_id == second.event_id


async def test_mark_published_only_once(order_db):
    await append_events(order_db, ("o1", "OrderCreated", 1))
    [entry] = await pending(order_db)

    async with order_db() as session:
        async with session.begin():
            assert await outbox.mark_published(session, entry.id) is True
    async with order_db() as session:
        async with session.begin():
            assert await outbox.mark_published(session, entry.id) is False


async def test_respects_batch_size(order_db, broker):
    await append_events(order_db, *[(f"o{i}", "OrderCreated", 1) for i in range(5)])
    publisher = make_publisher(order_db, broker, batch_size=2)

    assert await publisher.publish_pending() == 2
    assert len(await pending(order_db)) == 3


async def test_run_drains_until_shutdown(order_db, broker):
    await append_events(order_db, ("o1", "OrderCreated", 1), ("o2", "OrderCreated", 1))
    shutdown_event = asyncio.Event()
    task = asyncio.create_task(make_publisher(order_db, broker).run(shutdown_event))

    for _ in range(100):
        if len(broker.events("order_events")) == 2:
            break
        await asyncio.sleep(0.01)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(broker.events("order_events")) == 2
    assert await pending(order_db) == []


@pytest.mark.parametrize("failures", [1, 3])
async def test_run_survives_broker_outage(order_db, broker, failures):
    await append_events(order_db, ("o1", "OrderCreated", 1))
    broker.publish_failures.extend(ConnectionError("down") for _ in range(failures))
    shutdown_event = asyncio.Event()
    task = asyncio.create_task(make_publisher(order_db, broker).run(shutdown_event))

    for _ in range(200):
        if broker.events("order_events"):
            break
        await asyncio.sleep(0.01)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(broker.events("order_events")) == 1
