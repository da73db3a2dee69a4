"""
Order Service — 注文ステータスの状態遷移

状態は前進のみ。同じ状態への更新は冪等 (何もしない)。

    Pending → PaymentValidated → Processing → InventoryReserved → Fulfilled → Shipped
        └──────────────┴────────────┴──────────────┴─→ Failed / Cancelled

Fulfilled の後に許されるのは Shipped だけ。
Failed / Cancelled / Shipped は終端状態。
"""

from services.common.messaging import OrderStatus

_FORWARD_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAYMENT_VALIDATED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.INVENTORY_RESERVED: 3,
    OrderStatus.FULFILLED: 4,
    OrderStatus.SHIPPED: 5,
}

TERMINAL_STATUSES = frozenset(
    {OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.SHIPPED}
)


class InvalidStatusTransition(Exception):
    def __init__(self, current: OrderStatus, requested: OrderStatus):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from {current.value} to {requested.value}"
        )


def check_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """
    遷移が許されるか判定する。

    True  : 状態を変更する
    False : 同じ状態 (冪等な再送) なので何もしない
    不正な遷移は InvalidStatusTransition を送出する。
    """
    if current == requested:
        return False
    if current in TERMINAL_STATUSES:
        raise InvalidStatusTransition(current, requested)
    if requested in (OrderStatus.FAILED, OrderStatus.CANCELLED):
        if current == OrderStatus.FULFILLED:
            raise InvalidStatusTransition(current, requested)
        return True
    if _FORWARD_RANK[requested] <= _FORWARD_RANK[current]:
        raise InvalidStatusTransition(current, requested)
    return True
