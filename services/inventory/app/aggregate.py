"""
Inventory Service — 在庫アイテム (Inventory Aggregate)

available = quantity_on_hand - quantity_reserved で算出。
引き当ては available を超えられず、解放は reserved を負にしない。
"""

from datetime import datetime


class InventoryAggregate:
    def __init__(
        self,
        product_id: int,
        sku: str,
        quantity_on_hand: int = 0,
        quantity_reserved: int = 0,
        warehouse_location: str = "",
        last_updated: datetime | str | None = None,
    ) -> None:
        self.product_id = product_id
        self.sku = sku
        self.quantity_on_hand = quantity_on_hand
        self.quantity_reserved = quantity_reserved
        self.warehouse_location = warehouse_location
        self.last_updated = last_updated

    @property
    def available(self) -> int:
        return self.quantity_on_hand - self.quantity_reserved

    def can_reserve(self, quantity: int) -> bool:
        return self.available >= quantity

    def release_amount(self, quantity: int, held: int) -> int:
        """
        解放できる数量。

        要求数・アイテム全体の引き当て数・その注文が台帳上で保持している数
        の最小値。別の注文の引き当てを解放することはない。
        """
        return max(0, min(quantity, self.quantity_reserved, held))

    @classmethod
    def from_row(cls, row) -> "InventoryAggregate":
        return cls(
            product_id=row.product_id,
            sku=row.sku,
            quantity_on_hand=row.quantity_on_hand,
            quantity_reserved=row.quantity_reserved,
            warehouse_location=row.warehouse_location,
            last_updated=row.last_updated,
        )

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "sku": self.sku,
            "quantityOnHand": self.quantity_on_hand,
            "quantityReserved": self.quantity_reserved,
            "quantityAvailable": self.available,
            "warehouseLocation": self.warehouse_location,
            "lastUpdated": self.last_updated.isoformat()
            if isinstance(self.last_updated, datetime)
            else self.last_updated,
        }
