"""
Inventory Service — コマンドハンドラ (Write 側)

在庫の引き当て (Reserve) と解放 (Release) を処理する。

reserve は注文の全明細に対して all-or-nothing:
  1 つのトランザクションで明細を順に処理し、どれか 1 つでも
  商品なし / 在庫不足ならロールバックして失敗を返す。
  全明細が通ったときだけコミットする。

引き当ては条件付き UPDATE (available >= 数量 のときだけ加算) で行うので、
別注文の同時引き当てがあっても reserved が on hand を超えることはない。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.messaging import (
    ReservationConfirmation,
    ReservationRequest,
    ReservationResult,
)

from . import ledger
from .aggregate import InventoryAggregate
from .events import (
    InventoryLine,
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
)
from .schema import inventory_items

logger = logging.getLogger(__name__)

RESERVE_ERROR = "An unexpected error occurred while processing the reservation"
RELEASE_ERROR = "An unexpected error occurred while processing the release"


class UnexpectedInventoryError(Exception):
    """ロールバック済みの予期しないエラー。result をそのまま返す (HTTP 500)。"""

    def __init__(self, result: ReservationResult):
        super().__init__(result.failure_reason)
        self.result = result


async def _load_item(session: AsyncSession, product_id: int) -> InventoryAggregate | None:
    row = (
        await session.execute(
            select(inventory_items).where(inventory_items.c.product_id == product_id)
        )
    ).fetchone()
    return InventoryAggregate.from_row(row) if row else None


async def _publish(redis: aioredis.Redis, event: BaseModel) -> None:
    """inventory_events に発行する。Redis の障害は結果に影響させない。"""
    try:
        await redis.publish(
            "inventory_events",
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.warning("Could not publish %s", type(event).__name__, exc_info=True)


async def _reject(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_number: str,
    reason: str,
) -> ReservationResult:
    await session.rollback()
    logger.warning("Reservation failed for Order %s: %s", order_number, reason)
    await _publish(
        redis,
        InventoryReservationFailed(
            order_number=order_number,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return ReservationResult(
        success=False, order_number=order_number, failure_reason=reason
    )


async def reserve_inventory(
    session: AsyncSession,
    redis: aioredis.Redis,
    request: ReservationRequest,
) -> ReservationResult:
    """
    在庫引き当てコマンド

    1. 台帳にこの注文の未解放の引き当てがあれば、明細が同じならそれを返す (冪等)。
       明細が違えば失敗を返す
    2. 明細ごとに商品を確認し、条件付き UPDATE で reserved を加算
    3. 商品なし / 在庫不足ならロールバックして失敗を返す
    4. 全明細が通ったらコミット
    """
    order_number = request.order_number
    logger.info(
        "Processing reservation for Order %s with %d lines",
        order_number,
        len(request.lines),
    )

    try:
        existing = await ledger.outstanding_reservations(session, order_number)
        if existing:
            requested: dict[int, int] = {}
            for line in request.lines:
                requested[line.product_id] = (
                    requested.get(line.product_id, 0) + line.quantity
                )
            held = {line["product_id"]: line["quantity"] for line in existing}
            if requested != held:
                return await _reject(
                    session,
                    redis,
                    order_number,
                    f"Order {order_number} already holds a different reservation",
                )

            await session.rollback()
            logger.info(
                "Order %s already holds a reservation, returning it", order_number
            )
            return ReservationResult(
                success=True,
                order_number=order_number,
                confirmations=[
                    ReservationConfirmation(
                        sku=line["sku"],
                        quantity_reserved=line["quantity"],
                        warehouse_location=line["warehouse_location"],
                    )
                    for line in existing
                ],
            )

        confirmations: list[ReservationConfirmation] = []
        now = datetime.now(timezone.utc)

        for line in request.lines:
            item = await _load_item(session, line.product_id)
            if item is None:
                return await _reject(
                    session,
                    redis,
                    order_number,
                    f"Product {line.product_id} (SKU: {line.sku}) not found in inventory",
                )

            sku = line.sku or item.sku
            result = await session.execute(
                update(inventory_items)
                .where(inventory_items.c.product_id == line.product_id)
                .where(
                    inventory_items.c.quantity_on_hand
                    - inventory_items.c.quantity_reserved
                    >= line.quantity
                )
                .values(
                    quantity_reserved=inventory_items.c.quantity_reserved
                    + line.quantity,
                    last_updated=now,
                )
            )
            if result.rowcount != 1:
                current = await _load_item(session, line.product_id)
                available = current.available if current else 0
                return await _reject(
                    session,
                    redis,
                    order_number,
                    f"Insufficient stock for {sku}. "
                    f"Requested: {line.quantity}, Available: {available}",
                )

            await ledger.append_entry(
                session,
                order_number,
                line.product_id,
                item.sku,
                ledger.RESERVED,
                line.quantity,
                item.warehouse_location,
            )
            confirmations.append(
                ReservationConfirmation(
                    sku=item.sku,
                    quantity_reserved=line.quantity,
                    warehouse_location=item.warehouse_location,
                )
            )
            logger.info(
                "Reserved %d of %s at %s for Order %s",
                line.quantity,
                item.sku,
                item.warehouse_location,
                order_number,
            )

        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.exception(
            "Reservation failed for Order %s due to an unexpected error",
            order_number,
        )
        raise UnexpectedInventoryError(
            ReservationResult(
                success=False, order_number=order_number, failure_reason=RESERVE_ERROR
            )
        ) from e

    logger.info("Reservation completed successfully for Order %s", order_number)
    await _publish(
        redis,
        InventoryReserved(
            order_number=order_number,
            lines=[
                InventoryLine(product_id=line.product_id, sku=c.sku, quantity=line.quantity)
                for line, c in zip(request.lines, confirmations)
            ],
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return ReservationResult(
        success=True, order_number=order_number, confirmations=confirmations
    )


async def release_inventory(
    session: AsyncSession,
    redis: aioredis.Redis,
    request: ReservationRequest,
) -> ReservationResult:
    """
    在庫解放コマンド (補償トランザクション)

    ベストエフォート: 在庫にない商品の明細はスキップする。
    解放数は min(要求数, 現在の reserved, この注文が台帳上で保持している数)。
    reserved は負にならず、別の注文の引き当てには手を付けない。
    """
    order_number = request.order_number
    logger.info(
        "Processing release for Order %s with %d lines",
        order_number,
        len(request.lines),
    )

    confirmations: list[ReservationConfirmation] = []
    released: list[InventoryLine] = []

    try:
        now = datetime.now(timezone.utc)
        held = {
            line["product_id"]: line["quantity"]
            for line in await ledger.outstanding_reservations(session, order_number)
        }
        for line in request.lines:
            item = await _load_item(session, line.product_id)
            if item is None:
                logger.warning(
                    "Release: Product %s not found in inventory, skipping",
                    line.product_id,
                )
                continue

            quantity = item.release_amount(line.quantity, held.get(line.product_id, 0))
            if quantity < line.quantity:
                logger.warning(
                    "Release: Order %s holds only %d of %s, releasing %d",
                    order_number,
                    held.get(line.product_id, 0),
                    item.sku,
                    quantity,
                )
            if quantity > 0:
                held[line.product_id] -= quantity
                await session.execute(
                    update(inventory_items)
                    .where(inventory_items.c.product_id == line.product_id)
                    .where(inventory_items.c.quantity_reserved >= quantity)
                    .values(
                        quantity_reserved=inventory_items.c.quantity_reserved
                        - quantity,
                        last_updated=now,
                    )
                )
                await ledger.append_entry(
                    session,
                    order_number,
                    line.product_id,
                    item.sku,
                    ledger.RELEASED,
                    quantity,
                    item.warehouse_location,
                )
                released.append(
                    InventoryLine(
                        product_id=line.product_id, sku=item.sku, quantity=quantity
                    )
                )

            confirmations.append(
                ReservationConfirmation(
                    sku=item.sku,
                    quantity_reserved=quantity,
                    warehouse_location=item.warehouse_location,
                )
            )
            logger.info(
                "Released %d of %s at %s for Order %s",
                quantity,
                item.sku,
                item.warehouse_location,
                order_number,
            )

        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.exception(
            "Release failed for Order %s due to an unexpected error", order_number
        )
        raise UnexpectedInventoryError(
            ReservationResult(
                success=False, order_number=order_number, failure_reason=RELEASE_ERROR
            )
        ) from e

    logger.info("Release completed successfully for Order %s", order_number)
    if released:
        await _publish(
            redis,
            InventoryReleased(
                order_number=order_number,
                lines=released,
                timestamp=datetime.now(timezone.utc),
            ),
        )
    return ReservationResult(
        success=True, order_number=order_number, confirmations=confirmations
    )
