"""
Order Service — テーブル定義

Database per Service パターン: このサービスだけが orders / order_items を持つ。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("customer_email", String(255), nullable=False, default=""),
    Column("customer_name", String(255), nullable=False, default=""),
    Column("total_amount", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("status", String(32), nullable=False, default="Pending"),
    Column("payment_reference", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True)),
    Column("fulfilled_at", DateTime(timezone=True)),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", Integer, nullable=False),
    Column("product_name", String(255), nullable=False, default=""),
    Column("sku", String(64), nullable=False, default=""),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2, asdecimal=False), nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
