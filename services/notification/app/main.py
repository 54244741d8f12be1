"""
Notification Service — FastAPI エントリーポイント

ユーザー登録・注文・支払いのイベントを購読してメールを送る。
バックグラウンドのサブスクライバが唯一の書き込み経路で、
API は送信履歴の参照だけを提供する。

┌──────────────┐  order_events   ┌──────────────────────┐   POST /messages
│ Order Service │ ─── Redis ───▶ │ Notification Service │ ─────────────────▶ Email Gateway
└──────────────┘   Streams       └──────────────────────┘   (Idempotency-Key)
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.log_config import configure_logging

from . import queries
from .config import Settings, get_settings
from .projections import build_replicator
from .sender import HttpEmailSender, LogEmailSender
from .subscriber import run_subscriber


def build_sender(settings: Settings) -> HttpEmailSender | LogEmailSender:
    if not settings.EMAIL_GATEWAY_URL:
        return LogEmailSender()
    return HttpEmailSender(
        settings.EMAIL_GATEWAY_URL, settings.EMAIL_FROM, timeout=settings.EMAIL_TIMEOUT
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にサブスクライバをバックグラウンドタスクとして開始する。"""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    app.state.session_factory = async_sessionmaker(engine, expire_on_commit=False)
    sender = build_sender(settings)
    replicator = build_replicator(app.state.session_factory, sender)

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
    await sender.aclose()
    await engine.dispose()


app = FastAPI(title="Notification Service", lifespan=lifespan)


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


# ── Query Endpoints (Read 側のみ) ─────────────────


@app.get("/queries/notifications")
async def query_notifications(
    user_id: str | None = None,
    status: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    """送信履歴 (DEFERRED を含む)"""
    return await queries.list_notifications(session, user_id, status)


@app.get("/queries/recipients/{user_id}")
async def query_recipient(user_id: str, session: AsyncSession = Depends(get_session)):
    recipient = await queries.get_recipient(session, user_id)
    if not recipient:
        raise HTTPException(404, "Recipient not found")
    return recipient


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service"}
