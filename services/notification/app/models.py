"""
Notification Service — 通知モデル

    Pending ──送信成功──▶ Sent
       └────再送失敗───▶ Failed (以後は自動再送しない)
"""

from datetime import datetime
from enum import Enum

from services.common.messaging import CamelModel, FulfillmentEvent


class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "OrderConfirmation"
    ORDER_PROCESSING = "OrderProcessing"
    ORDER_FULFILLED = "OrderFulfilled"
    ORDER_SHIPPED = "OrderShipped"
    ORDER_FAILED = "OrderFailed"


class NotificationStatus(str, Enum):
    PENDING = "Pending"
    SENT = "Sent"
    FAILED = "Failed"


class Notification(CamelModel):
    id: int | None = None
    order_number: str
    customer_email: str = ""
    customer_name: str = ""
    type: NotificationType
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    created_at: datetime | None = None
    sent_at: datetime | None = None

    @classmethod
    def from_row(cls, row) -> "Notification":
        return cls(
            id=row.id,
            order_number=row.order_number,
            customer_email=row.customer_email,
            customer_name=row.customer_name,
            type=row.type,
            subject=row.subject,
            body=row.body,
            status=row.status,
            created_at=row.created_at,
            sent_at=row.sent_at,
        )


def build_notification(event: FulfillmentEvent) -> Notification:
    """フルフィルメント結果から顧客向けの通知文面を作る。"""
    if event.success:
        return Notification(
            order_number=event.order_number,
            customer_email=event.customer_email,
            customer_name=event.customer_name,
            type=NotificationType.ORDER_FULFILLED,
            subject=f"Your order {event.order_number} has been fulfilled!",
            body=(
                f"Dear {event.customer_name},\n\n"
                f"Great news! Your order {event.order_number} has been successfully "
                "fulfilled and is being prepared for shipment.\n\n"
                "You will receive a shipping confirmation once your package is on "
                "its way.\n\n"
                "Thank you for shopping with us!"
            ),
        )

    return Notification(
        order_number=event.order_number,
        customer_email=event.customer_email,
        customer_name=event.customer_name,
        type=NotificationType.ORDER_FAILED,
        subject=f"Issue with your order {event.order_number}",
        body=(
            f"Dear {event.customer_name},\n\n"
            "We're sorry, but there was an issue processing your order "
            f"{event.order_number}.\n\n"
            f"Reason: {event.failure_reason or 'Unknown error'}\n\n"
            "Our team has been notified and will look into this. "
            "If you have any questions, please contact our support team.\n\n"
            "We apologize for the inconvenience."
        ),
    )
