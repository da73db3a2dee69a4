"""
Inventory Service — 引き当て台帳 (Reservation Ledger)

注文番号ごとに InventoryReserved / InventoryReleased を追記する。
在庫数の更新と同じトランザクションで書き込むので、台帳と
quantity_reserved は常に一致する。

用途:
- reserve の冪等化 (同じ注文の再配信で二重に引き当てない)
- 注文ごとの引き当て状況の確認 (学習・デバッグ用)
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import inventory_ledger

RESERVED = "InventoryReserved"
RELEASED = "InventoryReleased"


async def append_entry(
    session: AsyncSession,
    order_number: str,
    product_id: int,
    sku: str,
    entry_type: str,
    quantity: int,
    warehouse_location: str = "",
) -> None:
    """台帳に 1 行追記する (コミットは呼び出し側)。"""
    await session.execute(
        insert(inventory_ledger).values(
            order_number=order_number,
            product_id=product_id,
            sku=sku,
            entry_type=entry_type,
            quantity=quantity,
            warehouse_location=warehouse_location,
            created_at=datetime.now(timezone.utc),
        )
    )


async def load_entries(session: AsyncSession, order_number: str) -> list[dict]:
    result = await session.execute(
        select(inventory_ledger)
        .where(inventory_ledger.c.order_number == order_number)
        .order_by(inventory_ledger.c.id)
    )
    return [
        {
            "orderNumber": row.order_number,
            "productId": row.product_id,
            "sku": row.sku,
            "entryType": row.entry_type,
            "quantity": row.quantity,
            "warehouseLocation": row.warehouse_location,
            "createdAt": row.created_at.isoformat()
            if isinstance(row.created_at, datetime)
            else row.created_at,
        }
        for row in result.fetchall()
    ]


async def outstanding_reservations(
    session: AsyncSession, order_number: str
) -> list[dict]:
    """
    注文に対して解放されずに残っている引き当てを商品ごとに返す。

    [{"product_id", "sku", "quantity", "warehouse_location"}, ...]
    """
    held: dict[int, dict] = {}
    for entry in await load_entries(session, order_number):
        line = held.setdefault(
            entry["productId"],
            {
                "product_id": entry["productId"],
                "sku": entry["sku"],
                "quantity": 0,
                "warehouse_location": entry["warehouseLocation"],
            },
        )
        if entry["entryType"] == RESERVED:
            line["quantity"] += entry["quantity"]
        elif entry["entryType"] == RELEASED:
            line["quantity"] -= entry["quantity"]
    return [line for line in held.values() if line["quantity"] > 0]
