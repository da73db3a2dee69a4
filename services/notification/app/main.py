"""
Notification Service — FastAPI エントリーポイント

起動時に fulfillment-events ワーカーをバックグラウンドタスクとして開始する。
通知の Query API も提供する。

┌──────────────┐ fulfillment-events ┌──────────────────────┐
│ Saga Service │ ─────── file ────▶ │ Notification Service │ ──▶ (email)
└──────────────┘                    └──────────┬───────────┘
                                               │
                                      ┌────────▼────────┐
                                      │ Notification DB │
                                      └─────────────────┘
"""

import asyncio
import os
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.file_queue import FileMessageQueue
from services.common.logging_config import configure_logging
from services.common.polling import PollingPolicy, run_polling_loop, stop_worker

from . import queries, schema
from .models import Notification, NotificationStatus
from .sender import SimulatedEmailSender
from .worker import NotificationWorker

DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite+aiosqlite:///./notifications.db"
)
QUEUE_BASE_PATH = os.environ.get("QUEUE_BASE_PATH", "./queues")
RETRY_EVERY_N_POLLS = int(os.environ.get("NOTIFICATION_RETRY_EVERY_N_POLLS", "6"))
RETRY_BATCH_SIZE = int(os.environ.get("NOTIFICATION_RETRY_BATCH_SIZE", "10"))
RETRY_MIN_AGE_SECONDS = float(
    os.environ.get("NOTIFICATION_RETRY_MIN_AGE_SECONDS", "60")
)
EMAIL_SEND_DELAY_SECONDS = float(os.environ.get("EMAIL_SEND_DELAY_SECONDS", "0.5"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にワーカーを開始し、終了時は処理中のメッセージを待って止める。"""
    configure_logging("notification-service")
    await schema.init_db(engine)

    worker = NotificationWorker(
        FileMessageQueue(QUEUE_BASE_PATH, "fulfillment-events"),
        async_session,
        SimulatedEmailSender(delay=EMAIL_SEND_DELAY_SECONDS),
        retry_every_n_polls=RETRY_EVERY_N_POLLS,
        retry_batch_size=RETRY_BATCH_SIZE,
        retry_min_age=RETRY_MIN_AGE_SECONDS,
    )
    policy = PollingPolicy.from_env(default_interval=5.0)
    shutdown_event = asyncio.Event()
    worker_task = asyncio.create_task(
        run_polling_loop(
            "NotificationWorker",
            partial(worker.poll_once, policy, shutdown_event),
            policy,
            shutdown_event,
        )
    )
    yield
    await stop_worker(worker_task, shutdown_event)
    await engine.dispose()


app = FastAPI(title="Notification Service", lifespan=lifespan)


# ── Query Endpoints ──────────────────────────────


@app.get("/notifications", response_model=list[Notification])
async def query_list_notifications(
    status: NotificationStatus | None = None,
    order_number: str | None = None,
):
    async with async_session() as session:
        return await queries.list_notifications(session, status, order_number)


@app.get("/notifications/{notification_id}", response_model=Notification)
async def query_get_notification(notification_id: int):
    async with async_session() as session:
        notification = await queries.get_notification(session, notification_id)
        if not notification:
            raise HTTPException(404, "Notification not found")
        return notification


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service"}
