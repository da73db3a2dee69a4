"""
Common — メッセージ契約 (Message Contracts)

キュー上を流れるエンベロープ (QueueMessage) と、サービス間で共有する
ペイロード・リクエスト/レスポンスのモデルを定義する。

JSON 表現 (HTTP・キューファイルとも) は camelCase。
Python 側は snake_case で扱う。

  ┌──────────────── QueueMessage[T] ────────────────┐
  │ messageId / messageType / enqueuedAt             │
  │ traceParent / traceState / headers               │
  │ payload: OrderEvent | FulfillmentEvent           │
  └──────────────────────────────────────────────────┘
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 注文ステータス ───────────────────────────────


class OrderStatus(str, Enum):
    """
    注文ステータス。前進のみの状態遷移。

        Pending → Processing → InventoryReserved → Fulfilled
        Pending → Processing → Failed

    PaymentValidated / Shipped / Cancelled は他のコラボレーターが設定する。
    """

    PENDING = "Pending"
    PAYMENT_VALIDATED = "PaymentValidated"
    PROCESSING = "Processing"
    INVENTORY_RESERVED = "InventoryReserved"
    FULFILLED = "Fulfilled"
    SHIPPED = "Shipped"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


# ── キューイベント ───────────────────────────────


class OrderEvent(CamelModel):
    """注文イベント (order-events キュー)"""
    order_number: str
    event_type: str = "OrderCreated"
    order_id: int
    customer_email: str = ""
    customer_name: str = ""
    total_amount: float = 0
    timestamp: datetime = Field(default_factory=utcnow)


class FulfillmentEvent(CamelModel):
    """フルフィルメント結果イベント (fulfillment-events キュー)"""
    order_number: str
    order_id: int
    customer_email: str = ""
    customer_name: str = ""
    success: bool
    failure_reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class QueueMessage(CamelModel, Generic[PayloadT]):
    """
    キューメッセージのエンベロープ。

    作成後は不変。状態 (配信状況) はファイルがどのディレクトリに
    あるかだけで表現される。
    """

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: uuid4().hex)
    message_type: str = ""
    payload: PayloadT
    enqueued_at: datetime = Field(default_factory=utcnow)
    trace_parent: str | None = None
    trace_state: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _default_message_type(cls, data):
        if isinstance(data, dict) and not (
            data.get("messageType") or data.get("message_type")
        ):
            payload = data.get("payload")
            if isinstance(payload, BaseModel):
                data = {**data, "message_type": type(payload).__name__}
        return data


# ── 在庫引き当て契約 ─────────────────────────────


class ReservationLine(CamelModel):
    product_id: int
    sku: str = ""
    quantity: int = Field(gt=0)


class ReservationRequest(CamelModel):
    order_number: str
    lines: list[ReservationLine] = Field(default_factory=list)


class ReservationConfirmation(CamelModel):
    sku: str
    quantity_reserved: int
    warehouse_location: str = ""


class ReservationResult(CamelModel):
    success: bool
    order_number: str
    failure_reason: str | None = None
    confirmations: list[ReservationConfirmation] = Field(default_factory=list)


# ── 注文ビュー (Saga が Order Service から受け取る形) ─


class OrderItemView(CamelModel):
    product_id: int
    product_name: str = ""
    sku: str = ""
    quantity: int
    unit_price: float = 0


class OrderView(CamelModel):
    id: int
    order_number: str
    customer_email: str = ""
    customer_name: str = ""
    items: list[OrderItemView] = Field(default_factory=list)
    total_amount: float = 0
    status: OrderStatus = OrderStatus.PENDING
