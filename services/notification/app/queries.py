"""
Notification Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import notifications, recipients


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "idempotency_key": row.idempotency_key,
        "template": row.template,
        "user_id": row.user_id,
        "email": row.email,
        "subject": row.subject,
        "status": row.status,
        "created_at": row.created_at.isoformat(),
        "sent_at": row.sent_at.isoformat() if row.sent_at else None,
    }


async def list_notifications(
    session: AsyncSession, user_id: str | None = None, status: str | None = None
) -> list[dict]:
    stmt = select(notifications).order_by(notifications.c.created_at.desc())
    if user_id:
        stmt = stmt.where(notifications.c.user_id == user_id)
    if status:
        stmt = stmt.where(notifications.c.status == status)
    result = await session.execute(stmt)
    return [_to_dict(row) for row in result.fetchall()]


async def get_recipient(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(
        select(recipients).where(recipients.c.user_id == user_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return {"user_id": row.user_id, "email": row.email, "full_name": row.full_name}
