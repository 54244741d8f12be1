"""
Notification Service — イベント投影 (Projection)

受信したイベントを通知に変換して送信する。各ハンドラは
IdempotentReplicator のトランザクション内で呼ばれるため、
通知行の INSERT・送信・processed_events の記録は一緒に確定するか、
まとめてロールバックされる。

宛先 (UserCreated) より先に注文や支払いのイベントが届くことがある。
その場合は通知を DEFERRED で保存し、UserCreated が届いた時点で送る。
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.events import DomainEvent, utcnow
from services.common.replicator import IdempotentReplicator, ProjectionHandler

from . import events, templates
from .schema import notifications, processed_events, recipients
from .sender import EmailSender

logger = logging.getLogger(__name__)

SENT = "SENT"
DEFERRED = "DEFERRED"


def notification_key(event_id, template: str) -> str:
    return f"{event_id}:{template}"


class NotificationProjection:
    def __init__(
        self, sender: EmailSender, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.sender = sender
        self.clock = clock

    @property
    def handlers(self) -> dict[str, ProjectionHandler]:
        return {
            events.USER_CREATED: self.on_user_created,
            events.ORDER_CREATED: self.on_order_created,
            events.ORDER_CANCELLED: self.on_order_cancelled,
            events.PAYMENT_COMPLETED: self.on_payment_completed,
            events.PAYMENT_FAILED: self.on_payment_failed,
        }

    # ── ハンドラ ─────────────────────────────────

    async def on_user_created(self, session: AsyncSession, event: DomainEvent) -> None:
        data = events.UserCreated.model_validate(event.payload)
        await self._upsert_recipient(session, data)
        await self._notify(session, event, templates.WELCOME, data.user_id, {})
        await self._flush_deferred(session, data.user_id)

    async def on_order_created(self, session: AsyncSession, event: DomainEvent) -> None:
        data = events.OrderCreated.model_validate(event.payload)
        await self._notify(
            session,
            event,
            templates.ORDER_PLACED,
            data.user_id,
            {
                "order_id": data.order_id,
                "amount": f"{data.total.amount:.2f}",
                "currency": data.total.currency,
            },
        )

    async def on_order_cancelled(
        self, session: AsyncSession, event: DomainEvent
    ) -> None:
        data = events.OrderCancelled.model_validate(event.payload)
        await self._notify(
            session,
            event,
            templates.ORDER_CANCELLED,
            data.user_id,
            {
                "order_id": data.order_id,
                "amount": f"{data.total.amount:.2f}",
                "currency": data.total.currency,
            },
        )

    async def on_payment_completed(
        self, session: AsyncSession, event: DomainEvent
    ) -> None:
        data = events.PaymentCompleted.model_validate(event.payload)
        await self._notify(
            session,
            event,
            templates.PAYMENT_COMPLETED,
            data.user_id,
            {
                "order_id": data.order_id,
                "amount": f"{data.amount:.2f}",
                "currency": data.currency,
            },
        )

    async def on_payment_failed(self, session: AsyncSession, event: DomainEvent) -> None:
        data = events.PaymentFailed.model_validate(event.payload)
        await self._notify(
            session,
            event,
            templates.PAYMENT_FAILED,
            data.user_id,
            {"order_id": data.order_id},
        )

    # ── 内部処理 ─────────────────────────────────

    async def _notify(
        self,
        session: AsyncSession,
        event: DomainEvent,
        template: str,
        user_id: str,
        context: dict,
    ) -> None:
        key = notification_key(event.event_id, template)
        existing = await session.execute(
            select(notifications.c.id).where(notifications.c.idempotency_key == key)
        )
        if existing.first() is not None:
            logger.info("Notification %s already recorded", key)
            return

        recipient = await _load_recipient(session, user_id)
        now = self.clock()
        row = {
            "id": str(uuid4()),
            "idempotency_key": key,
            "event_id": str(event.event_id),
            "template": template,
            "user_id": user_id,
            "context": json.dumps(context),
            "created_at": now,
        }
        if recipient is None:
            await session.execute(insert(notifications).values(**row, status=DEFERRED))
            logger.info("Recipient %s unknown yet; deferred %s", user_id, key)
            return

        message = templates.render(template, recipient.email, recipient.full_name, context)
        await session.execute(
            insert(notifications).values(
                **row,
                email=message.to,
                subject=message.subject,
                status=SENT,
                sent_at=now,
            )
        )
        # 送信に失敗したら行ごとロールバックされ、再配送で同じキーのまま再送する
        await self.sender.send(message, key)

    async def _flush_deferred(self, session: AsyncSession, user_id: str) -> None:
        recipient = await _load_recipient(session, user_id)
        result = await session.execute(
            select(notifications)
            .where(
                notifications.c.user_id == user_id,
                notifications.c.status == DEFERRED,
            )
            .order_by(notifications.c.created_at)
        )
        for pending in result.fetchall():
            message = templates.render(
                pending.template,
                recipient.email,
                recipient.full_name,
                json.loads(pending.context),
            )
            await session.execute(
                update(notifications)
                .where(notifications.c.id == pending.id)
                .values(
                    email=message.to,
                    subject=message.subject,
                    status=SENT,
                    sent_at=self.clock(),
                )
            )
            await self.sender.send(message, pending.idempotency_key)
            logger.info("Dispatched deferred notification %s", pending.idempotency_key)

    async def _upsert_recipient(
        self, session: AsyncSession, data: events.UserCreated
    ) -> None:
        values = {
            "email": data.email,
            "full_name": data.full_name,
            "updated_at": self.clock(),
        }
        if await _load_recipient(session, data.user_id) is None:
            await session.execute(
                insert(recipients).values(user_id=data.user_id, **values)
            )
        else:
            await session.execute(
                update(recipients)
                .where(recipients.c.user_id == data.user_id)
                .values(**values)
            )


async def _load_recipient(session: AsyncSession, user_id: str):
    result = await session.execute(
        select(recipients).where(recipients.c.user_id == user_id)
    )
    return result.fetchone()


def build_replicator(
    session_factory: async_sessionmaker,
    sender: EmailSender,
    clock: Callable[[], datetime] = utcnow,
) -> IdempotentReplicator:
    projection = NotificationProjection(sender, clock)
    return IdempotentReplicator(
        "notification",
        session_factory,
        processed_events,
        projection.handlers,
        ignored_types=events.IGNORED_TYPES,
    )
