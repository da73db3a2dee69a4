"""ポーリングループとポリシーのテスト"""

import asyncio

import pytest

from services.common.messaging import OrderEvent, QueueMessage
from services.common.polling import (
    PollingPolicy,
    drain_queue,
    run_polling_loop,
    stop_worker,
)


class TestPollingPolicy:
    def test_delay_backs_off_and_caps(self):
        policy = PollingPolicy(poll_interval=1.0, max_backoff=5.0)
        assert policy.delay(0) == 1.0
        assert policy.delay(1) == 2.0
        assert policy.delay(2) == 4.0
        assert policy.delay(5) == 5.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "0.25")
        monkeypatch.setenv("POLL_BATCH_SIZE", "3")
        monkeypatch.setenv("QUEUE_VISIBILITY_TIMEOUT_SECONDS", "120")
        monkeypatch.delenv("POLL_MAX_BACKOFF_SECONDS", raising=False)

        policy = PollingPolicy.from_env()

        assert policy.poll_interval == 0.25
        assert policy.batch_size == 3
        assert policy.max_backoff == 60.0
        assert policy.visibility_timeout == 120.0

    def test_from_env_defaults(self, monkeypatch):
        for name in (
            "POLL_INTERVAL_SECONDS",
            "POLL_BATCH_SIZE",
            "POLL_MAX_BACKOFF_SECONDS",
            "QUEUE_VISIBILITY_TIMEOUT_SECONDS",
        ):
            monkeypatch.delenv(name, raising=False)
        policy = PollingPolicy.from_env(default_interval=5.0)
        assert policy.poll_interval == 5.0
        assert policy.visibility_timeout is None


def _message(n: int) -> QueueMessage[OrderEvent]:
    return QueueMessage[OrderEvent](
        payload=OrderEvent(order_number=f"ORD-{n}", order_id=n)
    )


class TestDrainQueue:
    @pytest.mark.asyncio
    async def test_processes_up_to_batch_size(self, order_events):
        for n in range(5):
            await order_events.enqueue(_message(n))
        handled = []

        async def handler(path, message):
            handled.append(message.payload.order_number)
            order_events.complete(path)

        count = await drain_queue(
            order_events,
            OrderEvent,
            handler,
            PollingPolicy(batch_size=3),
            asyncio.Event(),
        )

        assert count == 3
        assert len(handled) == 3
        assert order_events.pending_count() == 2

    @pytest.mark.asyncio
    async def test_stops_claiming_after_shutdown(self, order_events):
        for n in range(3):
            await order_events.enqueue(_message(n))
        shutdown = asyncio.Event()

        async def handler(path, message):
            order_events.complete(path)
            shutdown.set()

        count = await drain_queue(
            order_events, OrderEvent, handler, PollingPolicy(), shutdown
        )

        assert count == 1
        assert order_events.pending_count() == 2


class TestRunPollingLoop:
    @pytest.mark.asyncio
    async def test_survives_errors_and_stops_on_event(self):
        shutdown = asyncio.Event()
        calls = []

        async def poll_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            shutdown.set()

        policy = PollingPolicy(poll_interval=0.01, max_backoff=0.02)
        await asyncio.wait_for(
            run_polling_loop("test", poll_once, policy, shutdown), timeout=2
        )

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_stop_worker_lets_current_cycle_finish(self):
        shutdown = asyncio.Event()
        started = asyncio.Event()
        finished = []

        async def poll_once():
            started.set()
            await asyncio.sleep(0.05)
            finished.append(True)

        task = asyncio.create_task(
            run_polling_loop("test", poll_once, PollingPolicy(poll_interval=10), shutdown)
        )
        await started.wait()
        await stop_worker(task, shutdown, grace=2)

        assert finished == [True]
        assert task.done()
