"""
Inventory Service — FastAPI エントリーポイント

在庫の確認・引き当て・解放を提供する。
引き当て結果 (成功・失敗) は HTTP 200 の ReservationResult で返す。
予期しないエラーのときだけ HTTP 500 (本文は同じ形)。
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.logging_config import configure_logging
from services.common.messaging import ReservationRequest, ReservationResult

from . import commands, ledger, queries, schema

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./inventory.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
SEED_INVENTORY = os.environ.get("SEED_INVENTORY", "true").lower() == "true"

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    configure_logging("inventory-service")
    await schema.init_db(engine, seed=SEED_INVENTORY)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


def _error_response(e: commands.UnexpectedInventoryError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content=e.result.model_dump(mode="json", by_alias=True),
    )


# ── Command Endpoints ────────────────────────────


@app.post("/inventory/reserve", response_model=ReservationResult)
async def cmd_reserve(req: ReservationRequest):
    """在庫引き当てコマンド (全明細 all-or-nothing)"""
    async with async_session() as session:
        try:
            return await commands.reserve_inventory(session, redis_pool, req)
        except commands.UnexpectedInventoryError as e:
            return _error_response(e)


@app.post("/inventory/release", response_model=ReservationResult)
async def cmd_release(req: ReservationRequest):
    """在庫解放コマンド (補償トランザクション)"""
    async with async_session() as session:
        try:
            return await commands.release_inventory(session, redis_pool, req)
        except commands.UnexpectedInventoryError as e:
            return _error_response(e)


# ── Query Endpoints ──────────────────────────────


@app.get("/inventory")
async def query_list_items():
    async with async_session() as session:
        return await queries.list_items(session)


@app.get("/inventory/check")
async def query_check_availability(
    product_id: int = Query(alias="productId"),
    quantity: int = Query(ge=0),
):
    """在庫確認 (商品がなければ在庫 0 として返す)"""
    async with async_session() as session:
        return await queries.check_availability(session, product_id, quantity)


@app.get("/inventory/ledger/{order_number}")
async def query_ledger(order_number: str):
    """注文ごとの引き当て台帳 (学習・デバッグ用)"""
    async with async_session() as session:
        return await ledger.load_entries(session, order_number)


@app.get("/inventory/{product_id}")
async def query_get_item(product_id: int):
    async with async_session() as session:
        item = await queries.get_item(session, product_id)
        if not item:
            raise HTTPException(
                404, f"No inventory record found for product {product_id}"
            )
        return item


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
