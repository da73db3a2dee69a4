"""
Inventory Service — テーブル定義と初期在庫

inventory_items    : 在庫数 (on hand) と引き当て数 (reserved)
inventory_ledger   : 注文ごとの引き当て / 解放の記録 (追記のみ)
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    func,
    insert,
    select,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

inventory_items = Table(
    "inventory_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, nullable=False, unique=True),
    Column("sku", String(50), nullable=False, unique=True),
    Column("quantity_on_hand", Integer, nullable=False, default=0),
    Column("quantity_reserved", Integer, nullable=False, default=0),
    Column("warehouse_location", String(20), nullable=False, default=""),
    Column("last_updated", DateTime(timezone=True), nullable=False),
)

inventory_ledger = Table(
    "inventory_ledger",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_number", String(64), nullable=False, index=True),
    Column("product_id", Integer, nullable=False),
    Column("sku", String(50), nullable=False),
    Column("entry_type", String(32), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("warehouse_location", String(20), nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# (product_id, sku, on hand, location)
SEED_ITEMS = [
    (1, "ELEC-WBH-001", 150, "A-1-01"),
    (2, "ELEC-ULC-002", 200, "A-1-02"),
    (3, "ELEC-MGK-003", 75, "A-2-05"),
    (4, "CLTH-MCT-004", 500, "B-1-01"),
    (5, "CLTH-WRS-005", 120, "B-2-03"),
    (6, "HOME-SSW-006", 180, "C-1-08"),
    (7, "ELEC-PBS-007", 90, "A-3-12"),
    (8, "SPRT-YMP-008", 60, "D-1-02"),
    (9, "ACCS-LWB-009", 200, "B-3-07"),
    (10, "HOME-LDL-010", 110, "C-2-04"),
]


async def init_db(engine: AsyncEngine, seed: bool = True) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        if not seed:
            return
        count = (
            await conn.execute(select(func.count()).select_from(inventory_items))
        ).scalar_one()
        if count == 0:
            now = datetime.now(timezone.utc)
            await conn.execute(
                insert(inventory_items),
                [
                    {
                        "product_id": product_id,
                        "sku": sku,
                        "quantity_on_hand": on_hand,
                        "quantity_reserved": 0,
                        "warehouse_location": location,
                        "last_updated": now,
                    }
                    for product_id, sku, on_hand, location in SEED_ITEMS
                ],
            )
