"""
Saga Service — FastAPI エントリーポイント

起動時に注文 Saga ワーカーをバックグラウンドタスクとして開始する。
ワーカーは order-events キューをポーリングし、結果を
fulfillment-events キューに書き込む。

┌──────────────┐ order-events ┌──────────────┐ fulfillment-events ┌──────────────┐
│ Order Service │ ───────────▶ │ Saga Service │ ─────────────────▶ │ Notification │
└──────────────┘              └──────┬───────┘                    └──────────────┘
                                     │ HTTP
                       Order Service / Inventory Service
"""

import asyncio
import os
from contextlib import asynccontextmanager
from functools import partial

import httpx
from fastapi import FastAPI

from services.common.file_queue import FileMessageQueue
from services.common.logging_config import configure_logging
from services.common.polling import PollingPolicy, run_polling_loop, stop_worker

from .orchestrator import OrderSagaWorker

ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://localhost:5101")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://localhost:5102")
QUEUE_BASE_PATH = os.environ.get("QUEUE_BASE_PATH", "./queues")
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "30"))

order_events: FileMessageQueue | None = None
fulfillment_events: FileMessageQueue | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に Saga ワーカーを開始し、終了時は処理中のメッセージを待って止める。"""
    global order_events, fulfillment_events
    configure_logging("saga-service")

    order_events = FileMessageQueue(QUEUE_BASE_PATH, "order-events")
    fulfillment_events = FileMessageQueue(QUEUE_BASE_PATH, "fulfillment-events")
    policy = PollingPolicy.from_env(default_interval=3.0)
    shutdown_event = asyncio.Event()

    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
        worker = OrderSagaWorker(
            ORDER_SERVICE_URL,
            INVENTORY_SERVICE_URL,
            client,
            order_events,
            fulfillment_events,
        )
        worker_task = asyncio.create_task(
            run_polling_loop(
                "OrderSagaWorker",
                partial(worker.poll_once, policy, shutdown_event),
                policy,
                shutdown_event,
            )
        )
        yield
        await stop_worker(worker_task, shutdown_event, grace=HTTP_TIMEOUT_SECONDS)


app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "saga-service",
        "queues": {
            "order-events": {
                "pending": order_events.pending_count(),
                "processing": order_events.processing_count(),
            },
            "fulfillment-events": {
                "pending": fulfillment_events.pending_count(),
            },
        },
    }
