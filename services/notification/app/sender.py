"""
Notification Service — 送信プロバイダー

実際のメール送信は行わず、遅延を入れてログに記録するだけ。
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from .models import Notification

logger = logging.getLogger(__name__)


class EmailSender(ABC):
    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """送信に失敗したら例外を送出する。"""
        raise NotImplementedError


class SimulatedEmailSender(EmailSender):
    def __init__(self, delay: float = 0.5):
        self.delay = delay

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Sending email to %s: %s",
            notification.customer_email,
            notification.subject,
        )
        await asyncio.sleep(self.delay)
        logger.info(
            "Email sent successfully to %s for order %s",
            notification.customer_email,
            notification.order_number,
        )
