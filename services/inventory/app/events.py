"""
Inventory Service — イベント定義

コミット後に Redis Pub/Sub (inventory_events チャネル) へ発行する。
購読者がいなくても引き当て結果には影響しない。
"""

from datetime import datetime

from pydantic import BaseModel


class InventoryLine(BaseModel):
    product_id: int
    sku: str
    quantity: int


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    order_number: str
    lines: list[InventoryLine]
    timestamp: datetime


class InventoryReservationFailed(BaseModel):
    """在庫引き当てが失敗した (在庫不足・商品なし)"""
    order_number: str
    reason: str
    timestamp: datetime


class InventoryReleased(BaseModel):
    """引き当てが解放された (補償トランザクション)"""
    order_number: str
    lines: list[InventoryLine]
    timestamp: datetime
