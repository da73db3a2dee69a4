"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import InventoryAggregate
from .schema import inventory_items


async def get_item(session: AsyncSession, product_id: int) -> dict | None:
    result = await session.execute(
        select(inventory_items).where(inventory_items.c.product_id == product_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return InventoryAggregate.from_row(row).to_dict()


async def list_items(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(inventory_items).order_by(inventory_items.c.product_id)
    )
    return [InventoryAggregate.from_row(row).to_dict() for row in result.fetchall()]


async def check_availability(
    session: AsyncSession, product_id: int, quantity: int
) -> dict:
    """
    在庫確認 (読み取りのみ)

    在庫レコードがない商品はエラーではなく「在庫 0」として返す。
    """
    result = await session.execute(
        select(inventory_items).where(inventory_items.c.product_id == product_id)
    )
    row = result.fetchone()
    if not row:
        return {
            "available": False,
            "quantityAvailable": 0,
            "message": f"No inventory record found for product {product_id}",
        }

    item = InventoryAggregate.from_row(row)
    return {
        "available": item.can_reserve(quantity),
        "quantityAvailable": item.available,
    }
