"""
Saga Orchestrator — 注文フルフィルメント Saga

order-events キューから OrderEvent を 1 件ずつ取り出し、
Order Service と Inventory Service を HTTP で呼び出して注文を進める。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Order Service: ステータスを Processing に                 │
  │     └─ 409 → 再配信。注文の現在のステータスから再開 (_resume)  │
  │  2. Order Service: 注文番号で明細を取得                       │
  │     └─ 404 → 失敗へ                                          │
  │  3. Inventory Service: 全明細を引き当て                        │
  │     ├─ 成功 → InventoryReserved → Fulfilled                  │
  │     │         FulfillmentEvent(success) を発行、complete     │
  │     └─ 失敗 → Failed                                         │
  │               FulfillmentEvent(failure) を発行、fail          │
  └──────────────────────────────────────────────────────────────┘

キューメッセージを complete / fail するのは、そのメッセージに関する
下流の呼び出しがすべて終わった後だけ。
トレースコンテキストは全ての HTTP 呼び出しと発行するイベントに
そのまま引き継ぐ。
"""

import asyncio
import logging
from pathlib import Path

import httpx

from services.common.file_queue import MessageQueue
from services.common.messaging import (
    FulfillmentEvent,
    OrderEvent,
    OrderStatus,
    OrderView,
    QueueMessage,
    ReservationLine,
    ReservationRequest,
    ReservationResult,
)
from services.common.polling import PollingPolicy, drain_queue
from services.common.tracing import trace_headers

logger = logging.getLogger(__name__)

ORDER_NOT_FOUND = "Order not found in OrderApi"
ORDER_PREVIOUSLY_FAILED = "Order processing failed on an earlier delivery"


class OrderStatusConflict(Exception):
    """Order Service がステータス変更を拒否した (409)"""


class OrderSagaWorker:
    """注文 Saga のワーカー (1 プロセス 1 ループ、メッセージは逐次処理)"""

    def __init__(
        self,
        order_service_url: str,
        inventory_service_url: str,
        client: httpx.AsyncClient,
        order_events: MessageQueue,
        fulfillment_events: MessageQueue,
    ):
        self.order_url = order_service_url.rstrip("/")
        self.inventory_url = inventory_service_url.rstrip("/")
        self.client = client
        self.order_events = order_events
        self.fulfillment_events = fulfillment_events

    async def poll_once(
        self, policy: PollingPolicy, shutdown_event: asyncio.Event
    ) -> int:
        return await drain_queue(
            self.order_events,
            OrderEvent,
            self.process_message,
            policy,
            shutdown_event,
        )

    async def process_message(
        self, path: Path, message: QueueMessage[OrderEvent]
    ) -> None:
        """
        1 件の注文イベントを処理する。

        結果に応じて complete / fail まで行う。FulfillmentEvent の発行に
        失敗した場合は例外を上に投げ、メッセージは processing に残る。
        """
        event = message.payload
        logger.info(
            "Received order event: OrderNumber=%s, EventType=%s, OrderId=%s",
            event.order_number,
            event.event_type,
            event.order_id,
        )

        # ── Step 1: Processing へ ─────────────────────
        try:
            await self._update_status(event.order_id, OrderStatus.PROCESSING, message)
        except OrderStatusConflict:
            await self._resume(path, event, message)
            return
        except Exception as e:
            logger.exception(
                "Could not set order %s to Processing", event.order_number
            )
            await self._fail_order(event, message, str(e) or type(e).__name__, path)
            return

        logger.info("Order %s status set to Processing", event.order_number)
        reason = await self._reserve_and_fulfill(event, message)
        await self._finish(path, event, message, reason)

    async def _resume(
        self, path: Path, event: OrderEvent, message: QueueMessage[OrderEvent]
    ) -> None:
        """
        再配信されたメッセージ (注文はすでに Processing より先) の続きを処理する。

        前回の配信が途中で止まっていても結果イベントを失わないよう、
        注文の現在のステータスから再開する。
          Fulfilled / Shipped   → 成功イベントを再発行して complete
          Failed                → 失敗イベントを再発行して fail
          InventoryReserved     → 引き当て (冪等) から再開
          それ以外 (Cancelled)  → 何も発行せず complete
        GET に失敗したら例外を上に投げ、メッセージは processing に残る。
        """
        order = await self._get_order(event.order_number, message)
        if order is None:
            await self._fail_order(event, message, ORDER_NOT_FOUND, path)
            return

        logger.info(
            "Order %s redelivered while %s, resuming",
            event.order_number,
            order.status.value,
        )
        if order.status in (OrderStatus.FULFILLED, OrderStatus.SHIPPED):
            await self._finish(path, event, message, None)
        elif order.status == OrderStatus.FAILED:
            await self._emit(event, message, success=False, reason=ORDER_PREVIOUSLY_FAILED)
            logger.info(
                "Published fulfillment failure event for order %s", event.order_number
            )
            self.order_events.fail(path)
        elif order.status == OrderStatus.INVENTORY_RESERVED:
            reason = await self._reserve_and_fulfill(event, message)
            await self._finish(path, event, message, reason)
        else:
            logger.info(
                "Order %s is %s, nothing to emit", event.order_number, order.status.value
            )
            self.order_events.complete(path)

    async def _finish(
        self,
        path: Path,
        event: OrderEvent,
        message: QueueMessage[OrderEvent],
        reason: str | None,
    ) -> None:
        if reason is None:
            await self._emit(event, message, success=True)
            logger.info(
                "Published fulfillment success event for order %s",
                event.order_number,
            )
            self.order_events.complete(path)
            logger.info(
                "Order %s processing completed successfully", event.order_number
            )
        else:
            await self._fail_order(event, message, reason, path)

    async def _reserve_and_fulfill(
        self, event: OrderEvent, message: QueueMessage[OrderEvent]
    ) -> str | None:
        """Step 2〜3。成功なら None、失敗なら理由を返す。"""
        try:
            # ── Step 2: 注文明細を取得 ───────────────
            order = await self._get_order(event.order_number, message)
            if order is None:
                logger.error(
                    "Could not retrieve order %s from OrderApi", event.order_number
                )
                return ORDER_NOT_FOUND

            # ── Step 3: 在庫を引き当て ───────────────
            request = ReservationRequest(
                order_number=order.order_number,
                lines=[
                    ReservationLine(
                        product_id=item.product_id,
                        sku=item.sku,
                        quantity=item.quantity,
                    )
                    for item in order.items
                ],
            )
            logger.info(
                "Reserving inventory for order %s with %d line(s)",
                order.order_number,
                len(request.lines),
            )
            result = await self._reserve(request, message)

            if not result.success:
                reason = result.failure_reason or "Inventory reservation failed"
                logger.warning(
                    "Inventory reservation failed for order %s: %s",
                    event.order_number,
                    reason,
                )
                return reason

            logger.info(
                "Inventory reserved successfully for order %s", event.order_number
            )
            await self._update_status(
                event.order_id, OrderStatus.INVENTORY_RESERVED, message
            )
            logger.info("Order %s status set to InventoryReserved", event.order_number)
            await self._update_status(event.order_id, OrderStatus.FULFILLED, message)
            logger.info("Order %s status set to Fulfilled", event.order_number)
            return None
        except Exception as e:
            logger.exception("Error processing order %s", event.order_number)
            return str(e) or type(e).__name__

    async def _fail_order(
        self,
        event: OrderEvent,
        message: QueueMessage[OrderEvent],
        reason: str,
        path: Path,
    ) -> None:
        """Failed へ遷移し、失敗イベントを発行してメッセージをデッドレターへ。"""
        try:
            await self._update_status(event.order_id, OrderStatus.FAILED, message)
        except Exception:
            logger.exception(
                "Failed to update order %s status to Failed", event.order_number
            )

        await self._emit(event, message, success=False, reason=reason)
        logger.info(
            "Published fulfillment failure event for order %s", event.order_number
        )
        self.order_events.fail(path)

    async def _emit(
        self,
        event: OrderEvent,
        message: QueueMessage[OrderEvent],
        success: bool,
        reason: str | None = None,
    ) -> None:
        await self.fulfillment_events.enqueue(
            QueueMessage[FulfillmentEvent](
                payload=FulfillmentEvent(
                    order_number=event.order_number,
                    order_id=event.order_id,
                    customer_email=event.customer_email,
                    customer_name=event.customer_name,
                    success=success,
                    failure_reason=reason,
                ),
                trace_parent=message.trace_parent,
                trace_state=message.trace_state,
            )
        )

    # ── 下流サービスの呼び出し ───────────────────

    async def _update_status(
        self,
        order_id: int,
        status: OrderStatus,
        message: QueueMessage,
    ) -> None:
        resp = await self.client.put(
            f"{self.order_url}/orders/{order_id}/status",
            json={"status": status.value},
            headers=trace_headers(message),
        )
        if resp.status_code == 409:
            raise OrderStatusConflict(resp.text)
        resp.raise_for_status()

    async def _get_order(
        self, order_number: str, message: QueueMessage
    ) -> OrderView | None:
        resp = await self.client.get(
            f"{self.order_url}/orders/by-number/{order_number}",
            headers=trace_headers(message),
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return OrderView.model_validate(resp.json())

    async def _reserve(
        self, request: ReservationRequest, message: QueueMessage
    ) -> ReservationResult:
        resp = await self.client.post(
            f"{self.inventory_url}/inventory/reserve",
            json=request.model_dump(mode="json", by_alias=True),
            headers=trace_headers(message),
        )
        resp.raise_for_status()
        return ReservationResult.model_validate(resp.json())
