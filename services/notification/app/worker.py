"""
Notification Service — fulfillment-events ワーカー

fulfillment-events キューを購読し、FulfillmentEvent ごとに通知を作成・送信する。

  1 件の処理:
    通知を Pending で保存 → 送信 → Sent に更新 → complete
    保存・送信で例外 → fail (デッドレター)。通知は失敗時点のステータスのまま。

  再送スイープ (N 回のポーリングごと):
    作成から retry_min_age 秒以上経った Pending の通知を古い順に最大 batch 件再送する。
    (作成直後の通知は別プロセスが送信中かもしれないので対象外)
    成功 → Sent、例外 → Failed (以後は自動再送しない)。

キュー配信の失敗 (デッドレター) と通知送信の失敗 (スイープで再送) は別物として扱う。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from services.common.file_queue import MessageQueue
from services.common.messaging import FulfillmentEvent, QueueMessage
from services.common.polling import PollingPolicy, drain_queue

from . import commands
from .models import build_notification
from .sender import EmailSender

logger = logging.getLogger(__name__)


class NotificationWorker:
    def __init__(
        self,
        queue: MessageQueue,
        async_session_factory: sessionmaker,
        sender: EmailSender,
        retry_every_n_polls: int = 6,
        retry_batch_size: int = 10,
        retry_min_age: float = 60.0,
    ):
        self.queue = queue
        self.async_session_factory = async_session_factory
        self.sender = sender
        self.retry_every_n_polls = max(1, retry_every_n_polls)
        self.retry_batch_size = retry_batch_size
        self.retry_min_age = retry_min_age
        self._poll_count = 0

    async def poll_once(
        self, policy: PollingPolicy, shutdown_event: asyncio.Event
    ) -> int:
        processed = await drain_queue(
            self.queue,
            FulfillmentEvent,
            self.process_message,
            policy,
            shutdown_event,
        )

        self._poll_count += 1
        if self._poll_count % self.retry_every_n_polls == 0:
            await self.retry_pending()
        return processed

    async def process_message(
        self, path: Path, message: QueueMessage[FulfillmentEvent]
    ) -> None:
        evt = message.payload
        logger.info(
            "Received fulfillment event for order %s (Success: %s)",
            evt.order_number,
            evt.success,
        )

        try:
            async with self.async_session_factory() as session:
                notification = await commands.create_notification(
                    session, build_notification(evt)
                )
                logger.info(
                    "Created notification %s for order %s (Type: %s)",
                    notification.id,
                    notification.order_number,
                    notification.type.value,
                )

                await self.sender.send(notification)

                await commands.mark_sent(session, notification.id)
                logger.info(
                    "Notification %s marked as Sent for order %s",
                    notification.id,
                    notification.order_number,
                )
        except Exception:
            logger.exception(
                "Failed to process fulfillment event for order %s",
                evt.order_number,
            )
            self.queue.fail(path)
            return

        self.queue.complete(path)

    async def retry_pending(self) -> int:
        """Pending の通知を再送する。再送を試みた件数を返す。"""
        async with self.async_session_factory() as session:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.retry_min_age)
            pending = await commands.oldest_pending(
                session, self.retry_batch_size, older_than=cutoff
            )
            if not pending:
                return 0

            logger.info("Retrying %d pending notification(s)", len(pending))
            for notification in pending:
                try:
                    await self.sender.send(notification)
                except Exception:
                    logger.warning(
                        "Retry failed for notification %s (order %s)",
                        notification.id,
                        notification.order_number,
                        exc_info=True,
                    )
                    await commands.mark_failed(session, notification.id)
                    continue

                await commands.mark_sent(session, notification.id)
                logger.info(
                    "Retry successful for notification %s (order %s)",
                    notification.id,
                    notification.order_number,
                )
            return len(pending)
