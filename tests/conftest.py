"""
共通フィクスチャ

各サービスのテーブルを tmp_path 上の SQLite (aiosqlite) に作り、
キューも tmp_path 配下のディレクトリを使う。
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.file_queue import FileMessageQueue
from services.inventory.app import schema as inventory_schema
from services.notification.app import schema as notification_schema
from services.order.app import schema as order_schema


async def _session_factory(url: str, init):
    engine = create_async_engine(url, echo=False)
    await init(engine)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def order_db(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", order_schema.init_db
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def inventory_db(tmp_path):
    async def init(engine):
        await inventory_schema.init_db(engine, seed=False)

    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}", init
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def seeded_inventory_db(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}", inventory_schema.init_db
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def notification_db(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'notifications.db'}",
        notification_schema.init_db,
    )
    yield factory
    await engine.dispose()


@pytest.fixture
def queue_base(tmp_path):
    return tmp_path / "queues"


@pytest.fixture
def order_events(queue_base):
    return FileMessageQueue(queue_base, "order-events")


@pytest.fixture
def fulfillment_events(queue_base):
    return FileMessageQueue(queue_base, "fulfillment-events")


@pytest.fixture
def redis_mock():
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=0)
    return redis


async def add_inventory_item(
    factory,
    product_id: int,
    sku: str,
    on_hand: int,
    reserved: int = 0,
    location: str = "A-1-01",
) -> None:
    async with factory() as session:
        await session.execute(
            insert(inventory_schema.inventory_items).values(
                product_id=product_id,
                sku=sku,
                quantity_on_hand=on_hand,
                quantity_reserved=reserved,
                warehouse_location=location,
                last_updated=datetime.now(timezone.utc),
            )
        )
        await session.commit()


@pytest.fixture
def add_item():
    return add_inventory_item
