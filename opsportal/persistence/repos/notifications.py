from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import Notification


async def list_notifications(
    session: AsyncSession,
    *,
    recipient_user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    stmt = select(Notification).where(Notification.recipient_user_id == recipient_user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_unread(session: AsyncSession, *, recipient_user_id: str) -> int:
    result = await session.execute(
        select(func.count(Notification.id)).where(
            Notification.recipient_user_id == recipient_user_id,
            Notification.is_read.is_(False),
        )
    )
    return int(result.scalar_one())


async def mark_read(
    session: AsyncSession, *, recipient_user_id: str, notification_id: str, read_at: datetime
) -> Notification | None:
    # Recipient scoping doubles as the ownership check.
    result = await session.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.recipient_user_id == recipient_user_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    if not row.is_read:
        row.is_read = True
        row.read_at = read_at
    return row


async def mark_all_read(session: AsyncSession, *, recipient_user_id: str, read_at: datetime) -> int:
    result = await session.execute(
        update(Notification)
        .where(
            Notification.recipient_user_id == recipient_user_id,
            Notification.is_read.is_(False),
        )
        .values(is_read=True, read_at=read_at)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
