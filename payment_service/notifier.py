import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from payment_service.exceptions import CollaboratorError
from payment_service.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

ORDER_PAYMENT_STATUS = {
    PaymentStatus.COMPLETED: "paid",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.REFUNDED: "refunded",
}


class CollaboratorNotifier:
    """Best-effort fan-out of payment state changes.

    Failures are logged and swallowed: the payment record is authoritative
    and downstream services catch up through retries or reconciliation.
    """

    def __init__(self, order_service, notification_service, publisher=None):
        self.order_service = order_service
        self.notification_service = notification_service
        self.publisher = publisher

    async def payment_finalized(self, payment: Payment) -> None:
        completed = payment.status is PaymentStatus.COMPLETED
        await self._deliver(
            "order-service",
            self.order_service.update_order_payment_status(
                payment.order_id,
                ORDER_PAYMENT_STATUS.get(payment.status, payment.status.value),
                payment.payment_method_type.value,
            ),
        )
        notification = {
            "type": "payment_completed" if completed else "payment_failed",
            "payment_id": payment.id,
            "amount": str(payment.amount),
        }
        if not completed:
            notification["reason"] = payment.failure_reason
        await self._deliver("notification-service", self.notification_service.notify(payment.customer_id, notification))

        if completed:
            await self._publish(payment, "payment.processed", "PaymentProcessed")
        else:
            await self._publish(payment, "payment.failed", "PaymentFailed", reason=payment.failure_reason)

    async def refund_processed(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> None:
        if payment.status is PaymentStatus.REFUNDED:
            await self._deliver(
                "order-service",
                self.order_service.update_order_payment_status(
                    payment.order_id, ORDER_PAYMENT_STATUS[PaymentStatus.REFUNDED], payment.payment_method_type.value
                ),
            )
        await self._deliver(
            "notification-service",
            self.notification_service.notify(
                payment.customer_id,
                {"type": "refund_processed", "payment_id": payment.id, "amount": str(amount), "reason": reason},
            ),
        )
        await self._publish(
            payment,
            "payment.refunded",
            "PaymentRefunded",
            amount=amount,
            refund_amount=payment.refund_amount,
            reason=reason,
        )

    async def _deliver(self, service: str, call) -> None:
        try:
            await call
        except CollaboratorError as e:
            logger.error(f"Notification to {service} dropped: {e}")
        except Exception:
            logger.exception(f"Notification to {service} failed unexpectedly, dropped")

    async def _publish(self, payment: Payment, routing_key: str, event_type: str, **extra) -> None:
        if self.publisher is None:
            return
        event = {
            "event_id": str(uuid4()),
            "event_type": event_type,
            "timestamp": datetime.utcnow().isoformat(),
            "order_id": payment.order_id,
            "payment_id": payment.id,
            "amount": payment.amount,
            "status": payment.status.value,
        }
        event.update(extra)
        await self._deliver("event bus", self.publisher.publish(routing_key, event))
