"""
Order Service — コマンドハンドラ (Write 側)

注文作成時は DB にコミットしてから order-events キューに
OrderCreated を書き込む。以降の処理 (在庫引き当て・通知) は
Saga ワーカーがキュー経由で引き継ぐ。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.file_queue import MessageQueue
from services.common.messaging import OrderEvent, OrderStatus, QueueMessage

from . import queries
from .aggregate import check_transition
from .schema import order_items, orders

logger = logging.getLogger(__name__)


class OrderNotFound(Exception):
    pass


def new_order_number(now: datetime) -> str:
    """時刻由来の注文番号。同一ミリ秒の衝突を避けるため乱数サフィックスを付ける。"""
    millis = int(now.timestamp() * 1000)
    return f"ORD-{millis}-{uuid4().hex[:6].upper()}"


async def create_order(
    session: AsyncSession,
    queue: MessageQueue,
    customer_email: str,
    customer_name: str,
    items: list[dict],
    trace_parent: str | None = None,
    trace_state: str | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 合計金額を計算 (作成時に一度だけ。以降は再計算しない)
    2. orders / order_items に保存してコミット
    3. OrderCreated を order-events キューに書き込む
       (受信リクエストのトレースコンテキストを引き継ぐ)
    """
    now = datetime.now(timezone.utc)
    total_amount = sum(item["quantity"] * item["unit_price"] for item in items)
    order_number = new_order_number(now)

    result = await session.execute(
        insert(orders).values(
            order_number=order_number,
            customer_email=customer_email,
            customer_name=customer_name,
            total_amount=total_amount,
            status=OrderStatus.PENDING.value,
            created_at=now,
        )
    )
    order_id = result.inserted_primary_key[0]

    if items:
        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order_id,
                    "product_id": item["product_id"],
                    "product_name": item.get("product_name", ""),
                    "sku": item.get("sku", ""),
                    "quantity": item["quantity"],
                    "unit_price": item["unit_price"],
                }
                for item in items
            ],
        )
    await session.commit()

    logger.info(
        "Order %s created with ID %s, total %.2f",
        order_number,
        order_id,
        total_amount,
    )

    message = QueueMessage[OrderEvent](
        payload=OrderEvent(
            order_number=order_number,
            event_type="OrderCreated",
            order_id=order_id,
            customer_email=customer_email,
            customer_name=customer_name,
            total_amount=total_amount,
        ),
        trace_parent=trace_parent,
        trace_state=trace_state,
    )
    await queue.enqueue(message)
    logger.info("OrderCreated event published for %s", order_number)

    return await queries.get_order(session, order_id)


async def update_status(
    session: AsyncSession,
    order_id: int,
    status: OrderStatus,
) -> dict:
    """
    ステータス更新コマンド (Saga や他のコラボレーターから呼ばれる)

    同じステータスへの更新は何もしない (冪等)。
    後退や終端状態からの変更は InvalidStatusTransition。
    Processing / Fulfilled に初めて入ったときに時刻を記録する。
    """
    row = (
        await session.execute(select(orders).where(orders.c.id == order_id))
    ).fetchone()
    if not row:
        raise OrderNotFound(order_id)

    previous = OrderStatus(row.status)
    if check_transition(previous, status):
        now = datetime.now(timezone.utc)
        values = {"status": status.value}
        if status == OrderStatus.PROCESSING and row.processed_at is None:
            values["processed_at"] = now
        elif status == OrderStatus.FULFILLED and row.fulfilled_at is None:
            values["fulfilled_at"] = now

        await session.execute(
            update(orders).where(orders.c.id == order_id).values(**values)
        )
        await session.commit()
        logger.info(
            "Order %s status changed from %s to %s",
            order_id,
            previous.value,
            status.value,
        )
    else:
        logger.info("Order %s already %s, nothing to do", order_id, status.value)

    return await queries.get_order(session, order_id)
