"""
Seller Dashboard Service — FastAPI エントリーポイント

販売者向けリードモデルの Query API を提供する。
ユーザー・商品・注文のイベントをバックグラウンドで投影する。

このサービスは CQRS の Read 側のみ。Command エンドポイントは持たない。
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.log_config import configure_logging

from . import queries
from .config import get_settings
from .projections import build_replicator
from .subscriber import run_subscriber


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    app.state.session_factory = async_sessionmaker(engine, expire_on_commit=False)
    replicator = build_replicator(app.state.session_factory)

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(settings, replicator, shutdown_event)
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await engine.dispose()


app = FastAPI(title="Seller Dashboard Service", lifespan=lifespan)


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


# ── Query Endpoints (Read 側のみ) ─────────────────


@app.get("/queries/sellers/{seller_id}/metrics")
async def query_seller_metrics(seller_id: str, session: AsyncSession = Depends(get_session)):
    """商品別の販売数と売上 (キャンセル分を除く)"""
    return await queries.seller_metrics(session, seller_id)


@app.get("/queries/sellers/{seller_id}/products")
async def query_seller_products(
    seller_id: str, session: AsyncSession = Depends(get_session)
):
    return await queries.list_seller_products(session, seller_id)


@app.get("/queries/orders/{order_id}")
async def query_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/queries/users/{user_id}")
async def query_user(user_id: str, session: AsyncSession = Depends(get_session)):
    user = await queries.get_user(session, user_id)
    if not user:
        raise HTTPException(404, "User not found")
    return user


@app.get("/health")
async def health():
    return {"status": "ok", "service": "seller-dashboard-service"}
