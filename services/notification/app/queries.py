"""
Notification Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Notification, NotificationStatus
from .schema import notifications


async def list_notifications(
    session: AsyncSession,
    status: NotificationStatus | None = None,
    order_number: str | None = None,
) -> list[Notification]:
    """通知一覧 (新しい順)。ステータス・注文番号で絞り込める。"""
    query = select(notifications)
    if status is not None:
        query = query.where(notifications.c.status == status.value)
    if order_number:
        query = query.where(notifications.c.order_number == order_number)
    result = await session.execute(
        query.order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
    )
    return [Notification.from_row(row) for row in result.fetchall()]


async def get_notification(
    session: AsyncSession, notification_id: int
) -> Notification | None:
    result = await session.execute(
        select(notifications).where(notifications.c.id == notification_id)
    )
    row = result.fetchone()
    return Notification.from_row(row) if row else None
