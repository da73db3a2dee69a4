"""
Notification ワーカーのテスト

- 成功 / 失敗イベントから通知を作って送信する
- 送信失敗時はメッセージをデッドレター、通知は Pending のまま
- 再送スイープ (古い順・件数上限・N 回ごと)
"""

import asyncio

import httpx
import pytest

from services.common.messaging import FulfillmentEvent, QueueMessage
from services.common.polling import PollingPolicy
from services.notification.app import commands, main, queries
from services.notification.app.models import (
    NotificationStatus,
    NotificationType,
    build_notification,
)
from services.notification.app.sender import EmailSender
from services.notification.app.worker import NotificationWorker


class RecordingSender(EmailSender):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, notification) -> None:
        if self.fail:
            raise ConnectionError("SMTP relay unavailable")
        self.sent.append(notification)


def _event(order_number: str = "ORD-1", success: bool = True, reason: str | None = None):
    return QueueMessage[FulfillmentEvent](
        payload=FulfillmentEvent(
            order_number=order_number,
            order_id=1,
            customer_email="ada@example.com",
            customer_name="Ada",
            success=success,
            failure_reason=reason,
        )
    )


async def _all(factory, **filters):
    async with factory() as session:
        return await queries.list_notifications(session, **filters)


def _folder(queue, name: str) -> list:
    return list((queue.root / name).glob("*.json"))


class TestBuildNotification:
    def test_success_message(self):
        notification = build_notification(_event().payload)
        assert notification.type == NotificationType.ORDER_FULFILLED
        assert notification.subject == "Your order ORD-1 has been fulfilled!"
        assert notification.body.startswith("Dear Ada,")

    def test_failure_message_includes_reason(self):
        notification = build_notification(
            _event(success=False, reason="Insufficient stock for ELEC-WBH-001").payload
        )
        assert notification.type == NotificationType.ORDER_FAILED
        assert notification.subject == "Issue with your order ORD-1"
        assert "Reason: Insufficient stock for ELEC-WBH-001" in notification.body

    def test_failure_without_reason(self):
        notification = build_notification(_event(success=False).payload)
        assert "Reason: Unknown error" in notification.body


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_sends_and_marks_sent(self, notification_db, fulfillment_events):
        sender = RecordingSender()
        worker = NotificationWorker(fulfillment_events, notification_db, sender)
        await fulfillment_events.enqueue(_event())

        handled = await worker.poll_once(PollingPolicy(), asyncio.Event())

        assert handled == 1
        assert [n.order_number for n in sender.sent] == ["ORD-1"]
        (stored,) = await _all(notification_db)
        assert stored.status == NotificationStatus.SENT
        assert stored.sent_at is not None
        assert stored.customer_email == "ada@example.com"
        assert len(_folder(fulfillment_events, "completed")) == 1

    @pytest.mark.asyncio
    async def test_failure_event_notification(self, notification_db, fulfillment_events):
        worker = NotificationWorker(fulfillment_events, notification_db, RecordingSender())
        await fulfillment_events.enqueue(
            _event(success=False, reason="Order not found in OrderApi")
        )

        await worker.poll_once(PollingPolicy(), asyncio.Event())

        (stored,) = await _all(notification_db)
        assert stored.type == NotificationType.ORDER_FAILED
        assert "Order not found in OrderApi" in stored.body
        assert stored.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_send_failure_dead_letters_message(self, notification_db, fulfillment_events):
        worker = NotificationWorker(
            fulfillment_events, notification_db, RecordingSender(fail=True)
        )
        await fulfillment_events.enqueue(_event())

        await worker.poll_once(PollingPolicy(), asyncio.Event())

        (stored,) = await _all(notification_db)
        assert stored.status == NotificationStatus.PENDING
        assert stored.sent_at is None
        assert len(_folder(fulfillment_events, "failed")) == 1
        assert _folder(fulfillment_events, "processing") == []


class TestRetrySweep:
    @pytest.mark.asyncio
    async def test_pending_notification_is_resent(self, notification_db, fulfillment_events):
        failing = NotificationWorker(
            fulfillment_events, notification_db, RecordingSender(fail=True)
        )
        await fulfillment_events.enqueue(_event())
        await failing.poll_once(PollingPolicy(), asyncio.Event())

        sender = RecordingSender()
        healthy = NotificationWorker(
            fulfillment_events, notification_db, sender, retry_min_age=0
        )
        assert await healthy.retry_pending() == 1

        (stored,) = await _all(notification_db)
        assert stored.status == NotificationStatus.SENT
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_recent_pending_notification_is_left_alone(
        self, notification_db, fulfillment_events
    ):
        # 作成直後の Pending は別プロセスが送信中かもしれない
        async with notification_db() as session:
            await commands.create_notification(session, build_notification(_event().payload))

        sender = RecordingSender()
        worker = NotificationWorker(fulfillment_events, notification_db, sender)

        assert await worker.retry_pending() == 0
        assert sender.sent == []
        (stored,) = await _all(notification_db)
        assert stored.status == NotificationStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_retry_is_not_retried_again(self, notification_db, fulfillment_events):
        worker = NotificationWorker(
            fulfillment_events, notification_db, RecordingSender(fail=True), retry_min_age=0
        )
        async with notification_db() as session:
            await commands.create_notification(session, build_notification(_event().payload))

        assert await worker.retry_pending() == 1
        (stored,) = await _all(notification_db)
        assert stored.status == NotificationStatus.FAILED
        assert await worker.retry_pending() == 0

    @pytest.mark.asyncio
    async def test_sweep_is_capped_and_oldest_first(self, notification_db, fulfillment_events):
        async with notification_db() as session:
            for n in range(12):
                await commands.create_notification(
                    session, build_notification(_event(f"ORD-{n}").payload)
                )

        sender = RecordingSender()
        worker = NotificationWorker(
            fulfillment_events, notification_db, sender, retry_min_age=0
        )

        assert await worker.retry_pending() == 10
        assert [n.order_number for n in sender.sent] == [f"ORD-{n}" for n in range(10)]
        remaining = await _all(notification_db, status=NotificationStatus.PENDING)
        assert sorted(n.order_number for n in remaining) == ["ORD-10", "ORD-11"]

    @pytest.mark.asyncio
    async def test_sweep_runs_every_n_polls(self, notification_db, fulfillment_events):
        async with notification_db() as session:
            await commands.create_notification(session, build_notification(_event().payload))

        sender = RecordingSender()
        worker = NotificationWorker(
            fulfillment_events,
            notification_db,
            sender,
            retry_every_n_polls=3,
            retry_min_age=0,
        )

        for _ in range(2):
            await worker.poll_once(PollingPolicy(), asyncio.Event())
        assert sender.sent == []

        await worker.poll_once(PollingPolicy(), asyncio.Event())
        assert len(sender.sent) == 1


class TestNotificationApi:
    @pytest.mark.asyncio
    async def test_list_filters_and_lookup(self, notification_db, monkeypatch):
        async with notification_db() as session:
            first = await commands.create_notification(
                session, build_notification(_event("ORD-1").payload)
            )
            await commands.create_notification(
                session, build_notification(_event("ORD-2").payload)
            )
            await commands.mark_sent(session, first.id)

        monkeypatch.setattr(main, "async_session", notification_db)
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://notification") as client:
            everything = (await client.get("/notifications")).json()
            sent = (await client.get("/notifications", params={"status": "Sent"})).json()
            by_order = (
                await client.get("/notifications", params={"order_number": "ORD-2"})
            ).json()
            one = await client.get(f"/notifications/{first.id}")
            missing = await client.get("/notifications/999")

        assert len(everything) == 2
        assert [n["orderNumber"] for n in sent] == ["ORD-1"]
        assert [n["status"] for n in by_order] == ["Pending"]
        assert one.json()["type"] == "OrderFulfilled"
        assert missing.status_code == 404
