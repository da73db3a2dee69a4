"""
Order Service — クエリハンドラ (Read 側)

注文と明細を結合して返す。合計金額は保存済みの値をそのまま返し、
読み取り時に再計算しない。
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.messaging import OrderStatus

from .schema import order_items, orders


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, datetime) else str(value)


def _to_dict(row, items: list) -> dict:
    return {
        "id": row.id,
        "orderNumber": row.order_number,
        "customerEmail": row.customer_email,
        "customerName": row.customer_name,
        "items": [
            {
                "productId": item.product_id,
                "productName": item.product_name,
                "sku": item.sku,
                "quantity": item.quantity,
                "unitPrice": float(item.unit_price),
                "lineTotal": float(item.quantity * item.unit_price),
            }
            for item in items
        ],
        "totalAmount": float(row.total_amount),
        "status": row.status,
        "paymentReference": row.payment_reference,
        "createdAt": _iso(row.created_at),
        "processedAt": _iso(row.processed_at),
        "fulfilledAt": _iso(row.fulfilled_at),
    }


async def _with_items(session: AsyncSession, rows: list) -> list[dict]:
    if not rows:
        return []
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_([row.id for row in rows]))
        .order_by(order_items.c.id)
    )
    by_order: dict[int, list] = {}
    for item in result.fetchall():
        by_order.setdefault(item.order_id, []).append(item)
    return [_to_dict(row, by_order.get(row.id, [])) for row in rows]


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    rows = result.fetchall()
    found = await _with_items(session, rows)
    return found[0] if found else None


async def get_order_by_number(session: AsyncSession, order_number: str) -> dict | None:
    """注文番号で取得 (Saga が明細を取り出すのに使う)"""
    result = await session.execute(
        select(orders).where(orders.c.order_number == order_number)
    )
    found = await _with_items(session, result.fetchall())
    return found[0] if found else None


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(orders).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    return await _with_items(session, result.fetchall())


async def list_pending_orders(session: AsyncSession) -> list[dict]:
    """Pending のまま残っている注文 (古い順)"""
    result = await session.execute(
        select(orders)
        .where(orders.c.status == OrderStatus.PENDING.value)
        .order_by(orders.c.created_at, orders.c.id)
    )
    return await _with_items(session, result.fetchall())
