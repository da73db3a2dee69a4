"""
Notification Service — コマンドハンドラ (Write 側)

各コマンドは自分でコミットする。途中で失敗しても、
それまでにコミットされたステータスはそのまま残る。
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Notification, NotificationStatus
from .schema import notifications


async def create_notification(
    session: AsyncSession, notification: Notification
) -> Notification:
    """Pending で保存し、id と作成時刻を埋めた通知を返す。"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(notifications).values(
            order_number=notification.order_number,
            customer_email=notification.customer_email,
            customer_name=notification.customer_name,
            type=notification.type.value,
            subject=notification.subject,
            body=notification.body,
            status=NotificationStatus.PENDING.value,
            created_at=now,
        )
    )
    await session.commit()
    return notification.model_copy(
        update={
            "id": result.inserted_primary_key[0],
            "status": NotificationStatus.PENDING,
            "created_at": now,
        }
    )


async def mark_sent(session: AsyncSession, notification_id: int) -> None:
    await session.execute(
        update(notifications)
        .where(notifications.c.id == notification_id)
        .values(
            status=NotificationStatus.SENT.value,
            sent_at=datetime.now(timezone.utc),
        )
    )
    await session.commit()


async def mark_failed(session: AsyncSession, notification_id: int) -> None:
    await session.execute(
        update(notifications)
        .where(notifications.c.id == notification_id)
        .values(status=NotificationStatus.FAILED.value)
    )
    await session.commit()


async def oldest_pending(
    session: AsyncSession, limit: int, older_than: datetime | None = None
) -> list[Notification]:
    """
    再送対象: Pending の通知を古い順に最大 limit 件

    older_than を渡すと、それ以前に作成されたものだけを返す
    (送信中の通知を別プロセスのスイープが拾わないように)。
    """
    query = select(notifications).where(
        notifications.c.status == NotificationStatus.PENDING.value
    )
    if older_than is not None:
        query = query.where(notifications.c.created_at <= older_than)
    result = await session.execute(
        query.order_by(notifications.c.created_at, notifications.c.id).limit(limit)
    )
    return [Notification.from_row(row) for row in result.fetchall()]
