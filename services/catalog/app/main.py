"""
Catalog Service — FastAPI エントリーポイント

価格の見積りと在庫の確保 / 解放 / 確定を提供する。
期限切れの確保はバックグラウンドで定期的に解放する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.log_config import configure_logging

from . import commands, queries
from .config import get_settings

logger = logging.getLogger(__name__)


async def run_expiry_sweeper(
    session_factory: async_sessionmaker,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """期限切れの確保を interval 秒ごとに解放する。"""
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                await commands.expire_reservations(session)
        except Exception:
            logger.exception("Reservation expiry sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    app.state.settings = settings
    app.state.session_factory = async_sessionmaker(engine, expire_on_commit=False)

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(
        run_expiry_sweeper(
            app.state.session_factory, settings.EXPIRY_SWEEP_INTERVAL, shutdown_event
        )
    )
    yield
    shutdown_event.set()
    await sweeper_task
    await engine.dispose()


app = FastAPI(title="Catalog Service", lifespan=lifespan)


@app.exception_handler(commands.CatalogError)
async def catalog_error_handler(request: Request, exc: commands.CatalogError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


# ── Request Models ───────────────────────────────


class ReserveRequest(BaseModel):
    product_id: str
    order_id: str
    quantity: int = Field(gt=0)
    ttl_seconds: int = Field(300, gt=0)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/reservations", status_code=201)
async def cmd_reserve(
    req: ReserveRequest, request: Request, session: AsyncSession = Depends(get_session)
):
    """在庫の一時確保"""
    ttl = min(req.ttl_seconds, request.app.state.settings.MAX_RESERVATION_TTL_SECONDS)
    reservation = await commands.reserve(
        session, req.product_id, req.order_id, req.quantity, ttl
    )
    if reservation["status"] not in ("HELD", "COMMITTED"):
        raise HTTPException(409, f"Reservation is {reservation['status']}")
    return reservation


@app.post("/commands/reservations/{reservation_id}/release")
async def cmd_release(reservation_id: str, session: AsyncSession = Depends(get_session)):
    """在庫解放 (補償トランザクション)"""
    return await commands.release(session, reservation_id)


@app.post("/commands/reservations/{reservation_id}/commit")
async def cmd_commit(reservation_id: str, session: AsyncSession = Depends(get_session)):
    """確保の確定"""
    return await commands.commit(session, reservation_id)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/products/quote")
async def query_quote(
    ids: list[str] = Query(default=[]),
    session: AsyncSession = Depends(get_session),
):
    """複数商品の価格と在庫をまとめて返す"""
    return await queries.quote_products(session, ids)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: str, session: AsyncSession = Depends(get_session)):
    product = await queries.get_product(session, product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@app.get("/queries/reservations/{reservation_id}")
async def query_get_reservation(
    reservation_id: str, session: AsyncSession = Depends(get_session)
):
    reservation = await queries.get_reservation(session, reservation_id)
    if not reservation:
        raise HTTPException(404, "Reservation not found")
    return reservation


@app.get("/health")
async def health():
    return {"status": "ok", "service": "catalog-service"}
