"""
エンドツーエンドのシナリオ

Order Service と Inventory Service のアプリを ASGITransport でつなぎ、
Saga ワーカーと Notification ワーカーをキュー経由で 1 周させる。
"""

import asyncio

import httpx
import pytest

from services.common.polling import PollingPolicy
from services.inventory.app import main as inventory_main
from services.notification.app import queries as notification_queries
from services.notification.app.models import NotificationStatus, NotificationType
from services.notification.app.sender import SimulatedEmailSender
from services.notification.app.worker import NotificationWorker
from services.order.app import main as order_main
from services.saga.app.orchestrator import OrderSagaWorker

TRACE_PARENT = "00-0af7651916cd43dd8448eb211c80319c-00f067aa0ba902b7-01"


@pytest.fixture
async def system(
    order_db,
    seeded_inventory_db,
    notification_db,
    order_events,
    fulfillment_events,
    redis_mock,
    monkeypatch,
):
    monkeypatch.setattr(order_main, "async_session", order_db)
    monkeypatch.setattr(order_main, "order_queue", order_events)
    monkeypatch.setattr(inventory_main, "async_session", seeded_inventory_db)
    monkeypatch.setattr(inventory_main, "redis_pool", redis_mock)

    mounts = {
        "http://order": httpx.ASGITransport(app=order_main.app),
        "http://inventory": httpx.ASGITransport(app=inventory_main.app),
    }
    async with httpx.AsyncClient(mounts=mounts) as client:
        saga = OrderSagaWorker(
            "http://order", "http://inventory", client, order_events, fulfillment_events
        )
        notifier = NotificationWorker(
            fulfillment_events, notification_db, SimulatedEmailSender(delay=0)
        )
        yield client, saga, notifier


async def _place_order(client, quantity: int) -> dict:
    resp = await client.post(
        "http://order/orders",
        json={
            "customerEmail": "ada@example.com",
            "customerName": "Ada",
            "items": [
                {
                    "productId": 1,
                    "productName": "Wireless Bluetooth Headphones",
                    "sku": "ELEC-WBH-001",
                    "quantity": quantity,
                    "unitPrice": 79.99,
                }
            ],
        },
        headers={"traceparent": TRACE_PARENT},
    )
    assert resp.status_code == 201
    return resp.json()


async def _run_workers(saga, notifier) -> None:
    policy = PollingPolicy()
    await saga.poll_once(policy, asyncio.Event())
    await notifier.poll_once(policy, asyncio.Event())


@pytest.mark.asyncio
async def test_order_is_reserved_fulfilled_and_notified(system, notification_db, fulfillment_events):
    client, saga, notifier = system

    order = await _place_order(client, quantity=3)
    await _run_workers(saga, notifier)

    stored = (await client.get(f"http://order/orders/{order['id']}")).json()
    assert stored["status"] == "Fulfilled"
    assert stored["processedAt"] is not None
    assert stored["fulfilledAt"] is not None

    item = (await client.get("http://inventory/inventory/1")).json()
    assert item["quantityReserved"] == 3
    assert item["quantityAvailable"] == 147

    ledger = (await client.get(f"http://inventory/inventory/ledger/{order['orderNumber']}")).json()
    assert [(e["entryType"], e["quantity"]) for e in ledger] == [("InventoryReserved", 3)]

    async with notification_db() as session:
        (notification,) = await notification_queries.list_notifications(session)
    assert notification.order_number == order["orderNumber"]
    assert notification.type == NotificationType.ORDER_FULFILLED
    assert notification.status == NotificationStatus.SENT
    assert len(list((fulfillment_events.root / "completed").glob("*.json"))) == 1


@pytest.mark.asyncio
async def test_oversized_order_fails_and_customer_is_told_why(
    system, notification_db, order_events
):
    client, saga, notifier = system

    order = await _place_order(client, quantity=999)
    await _run_workers(saga, notifier)

    stored = (await client.get(f"http://order/orders/{order['id']}")).json()
    assert stored["status"] == "Failed"
    assert (await client.get("http://inventory/inventory/1")).json()["quantityReserved"] == 0

    async with notification_db() as session:
        (notification,) = await notification_queries.list_notifications(session)
    assert notification.type == NotificationType.ORDER_FAILED
    assert "Insufficient stock for ELEC-WBH-001" in notification.body
    assert "Available: 150" in notification.body
    assert len(list((order_events.root / "failed").glob("*.json"))) == 1


@pytest.mark.asyncio
async def test_redelivered_order_is_not_reserved_twice(system, order_events, fulfillment_events):
    client, saga, notifier = system

    await _place_order(client, quantity=2)
    await saga.poll_once(PollingPolicy(), asyncio.Event())

    (completed,) = list((order_events.root / "completed").glob("*.json"))
    completed.rename(order_events.pending_dir / completed.name)
    await saga.poll_once(PollingPolicy(), asyncio.Event())

    # 結果イベントは再発行される (at-least-once)。引き当ては 1 回分のまま
    assert fulfillment_events.pending_count() == 2
    assert (await client.get("http://inventory/inventory/1")).json()["quantityReserved"] == 2


@pytest.mark.asyncio
async def test_event_lost_in_first_delivery_is_emitted_on_redelivery(
    system, notification_db, order_events, fulfillment_events, monkeypatch
):
    client, saga, notifier = system
    enqueue = fulfillment_events.enqueue
    attempts = []

    async def flaky_enqueue(message):
        attempts.append(message)
        if len(attempts) == 1:
            raise OSError("fulfillment-events volume unavailable")
        return await enqueue(message)

    monkeypatch.setattr(fulfillment_events, "enqueue", flaky_enqueue)

    order = await _place_order(client, quantity=2)
    with pytest.raises(OSError):
        await saga.poll_once(PollingPolicy(), asyncio.Event())

    stored = (await client.get(f"http://order/orders/{order['id']}")).json()
    assert stored["status"] == "Fulfilled"
    assert order_events.processing_count() == 1

    assert order_events.requeue_stale(older_than=0) == 1
    await _run_workers(saga, notifier)

    assert order_events.processing_count() == 0
    assert len(list((order_events.root / "completed").glob("*.json"))) == 1
    assert (await client.get("http://inventory/inventory/1")).json()["quantityReserved"] == 2
    async with notification_db() as session:
        (notification,) = await notification_queries.list_notifications(session)
    assert notification.order_number == order["orderNumber"]
    assert notification.type == NotificationType.ORDER_FULFILLED
    assert notification.status == NotificationStatus.SENT
