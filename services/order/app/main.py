"""
Order Service — FastAPI エントリーポイント

注文の作成・参照・ステータス更新を提供する。
注文作成時に order-events キュー (ファイルキュー) へ OrderCreated を書き込み、
Saga ワーカーに処理を引き渡す。

┌───────────────┐  order-events   ┌────────────────┐
│ Order Service │ ──── file ────▶ │  Saga Worker   │
│               │ ◀─── HTTP ───── │ (status 更新)  │
└───────────────┘                 └────────────────┘
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.file_queue import FileMessageQueue
from services.common.logging_config import configure_logging
from services.common.messaging import CamelModel, OrderStatus
from services.common.tracing import trace_context_from_headers

from . import commands, queries, schema
from .aggregate import InvalidStatusTransition

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./orders.db")
QUEUE_BASE_PATH = os.environ.get("QUEUE_BASE_PATH", "./queues")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
order_queue: FileMessageQueue | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global order_queue
    configure_logging("order-service")
    await schema.init_db(engine)
    order_queue = FileMessageQueue(QUEUE_BASE_PATH, "order-events")
    yield
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class CreateOrderItemRequest(CamelModel):
    product_id: int
    product_name: str = ""
    sku: str = ""
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)


class CreateOrderRequest(CamelModel):
    customer_email: str
    customer_name: str
    items: list[CreateOrderItemRequest] = Field(min_length=1)


class UpdateStatusRequest(CamelModel):
    status: OrderStatus


# ── Command Endpoints ────────────────────────────


@app.post("/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest, request: Request):
    """注文作成コマンド (トレースコンテキストをキューへ引き継ぐ)"""
    async with async_session() as session:
        return await commands.create_order(
            session,
            order_queue,
            req.customer_email,
            req.customer_name,
            [item.model_dump() for item in req.items],
            **trace_context_from_headers(request.headers),
        )


@app.put("/orders/{order_id}/status")
async def cmd_update_status(order_id: int, req: UpdateStatusRequest):
    """ステータス更新コマンド (同じステータスなら冪等、後退は 409)"""
    async with async_session() as session:
        try:
            return await commands.update_status(session, order_id, req.status)
        except commands.OrderNotFound:
            raise HTTPException(404, f"Order with ID {order_id} not found")
        except InvalidStatusTransition as e:
            raise HTTPException(409, str(e))


# ── Query Endpoints ──────────────────────────────


@app.get("/orders")
async def query_list_orders():
    async with async_session() as session:
        return await queries.list_orders(session)


@app.get("/orders/pending")
async def query_pending_orders():
    async with async_session() as session:
        return await queries.list_pending_orders(session)


@app.get("/orders/by-number/{order_number}")
async def query_get_order_by_number(order_number: str):
    """注文番号で取得 (Saga ワーカーが使う)"""
    async with async_session() as session:
        order = await queries.get_order_by_number(session, order_number)
        if not order:
            raise HTTPException(404, f"Order '{order_number}' not found")
        return order


@app.get("/orders/{order_id}")
async def query_get_order(order_id: int):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, f"Order with ID {order_id} not found")
        return order


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
