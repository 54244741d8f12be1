"""
Order Service — FastAPI エントリーポイント

Command (POST / PATCH) と Query (GET) のエンドポイントを分離する。
注文作成は Saga が担当し、注文とイベントは Outbox 経由で発行される。

認証は外部サービスの責務。ここでは認証済みのユーザー ID が
X-User-Id ヘッダーで渡される前提とする。
"""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.broker import RedisStreamBroker
from services.common.log_config import configure_logging

from . import commands, queries
from .accessors import CartAccessor, CatalogAccessor
from .config import Settings, get_settings
from .domain import OrderRequest, ShippingAddress
from .errors import OrderError
from .publisher import OutboxPublisher
from .saga import PlaceOrderSaga


def build_accessors(settings: Settings) -> tuple[CartAccessor, CatalogAccessor]:
    options = dict(
        timeout=settings.ACCESSOR_TIMEOUT,
        max_attempts=settings.ACCESSOR_MAX_ATTEMPTS,
        backoff=settings.ACCESSOR_BACKOFF,
    )
    return (
        CartAccessor(settings.CART_SERVICE_URL, **options),
        CatalogAccessor(settings.CATALOG_SERVICE_URL, **options),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        # 接続待ちも書き込みの期限内に収める
        pool_timeout=settings.PERSIST_TIMEOUT_SECONDS,
    )
    cart, catalog = build_accessors(settings)
    app.state.settings = settings
    app.state.session_factory = async_sessionmaker(engine, expire_on_commit=False)
    app.state.cart = cart
    app.state.catalog = catalog

    relay_task = None
    shutdown_event = asyncio.Event()
    redis_pool = None
    if settings.RUN_OUTBOX_RELAY:
        redis_pool = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        publisher = OutboxPublisher(
            app.state.session_factory,
            RedisStreamBroker(redis_pool),
            topic_for=lambda _event_type: settings.ORDER_EVENTS_TOPIC,
            batch_size=settings.OUTBOX_BATCH_SIZE,
            poll_interval=settings.OUTBOX_POLL_INTERVAL,
        )
        relay_task = asyncio.create_task(publisher.run(shutdown_event))

    yield

    shutdown_event.set()
    if relay_task:
        await relay_task
    if redis_pool:
        await redis_pool.aclose()
    await cart.aclose()
    await catalog.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── 依存関係 ─────────────────────────────────────


async def get_session(request: Request):
    session_factory: async_sessionmaker = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_saga(request: Request) -> PlaceOrderSaga:
    settings: Settings = request.app.state.settings
    return PlaceOrderSaga(
        request.app.state.session_factory,
        request.app.state.cart,
        request.app.state.catalog,
        tax_rate=settings.TAX_RATE,
        shipping_fee=settings.SHIPPING_FEE,
        reservation_ttl_seconds=settings.RESERVATION_TTL_SECONDS,
        deadline_seconds=settings.SAGA_DEADLINE_SECONDS,
        persist_timeout_seconds=settings.PERSIST_TIMEOUT_SECONDS,
    )


# ── Request Models ───────────────────────────────


class PlaceOrderBody(BaseModel):
    shipping_address: ShippingAddress


class CancelOrderBody(BaseModel):
    reason: str = ""


class UpdateAddressBody(BaseModel):
    shipping_address: ShippingAddress


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_place_order(
    body: PlaceOrderBody,
    saga: PlaceOrderSaga = Depends(get_saga),
    user_id: str = Header(alias="X-User-Id"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """注文作成 (Saga を実行)"""
    result = await saga.execute(
        OrderRequest(
            user_id=user_id,
            shipping_address=body.shipping_address,
            idempotency_key=idempotency_key,
        )
    )
    return {
        "order": result.order.to_dict(),
        "replayed": result.replayed,
        "saga_log": result.saga_log,
    }


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: str,
    body: CancelOrderBody,
    session: AsyncSession = Depends(get_session),
    user_id: str = Header(alias="X-User-Id"),
):
    """注文キャンセル (PENDING のみ)"""
    order = await commands.cancel_order(session, order_id, user_id, body.reason)
    return {"order": order.to_dict()}


@app.patch("/commands/orders/{order_id}/address")
async def cmd_update_address(
    order_id: str,
    body: UpdateAddressBody,
    session: AsyncSession = Depends(get_session),
    user_id: str = Header(alias="X-User-Id"),
):
    """配送先住所の変更 (PENDING のみ)"""
    order = await commands.update_shipping_address(
        session, order_id, user_id, body.shipping_address
    )
    return {"order": order.to_dict()}


# 外部フルフィルメントからの遷移


@app.post("/commands/orders/{order_id}/confirm")
async def cmd_confirm_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = await commands.confirm_order(session, order_id)
    return {"order_id": order.id, "status": order.status.value}


@app.post("/commands/orders/{order_id}/ship")
async def cmd_ship_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = await commands.ship_order(session, order_id)
    return {"order_id": order.id, "status": order.status.value}


@app.post("/commands/orders/{order_id}/deliver")
async def cmd_deliver_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = await commands.deliver_order(session, order_id)
    return {"order_id": order.id, "status": order.status.value}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(
    page: int = 1,
    limit: int = 10,
    session: AsyncSession = Depends(get_session),
    user_id: str = Header(alias="X-User-Id"),
):
    """自分の注文一覧"""
    return await queries.list_orders(session, user_id, page, limit)


@app.get("/queries/orders/{order_id}")
async def query_get_order(
    order_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: str = Header(alias="X-User-Id"),
):
    return await queries.get_order(session, order_id, user_id)


@app.get("/queries/orders/{order_id}/events")
async def query_order_events(
    order_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: str = Header(alias="X-User-Id"),
):
    """注文の Outbox エントリと発行状況"""
    return await queries.get_order_events(session, order_id, user_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
