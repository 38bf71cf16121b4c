import enum
import logging
from typing import Optional

from payment_service.exceptions import RefundExceedsBalanceError, ValidationError
from payment_service.gateway import GatewayOutcome
from payment_service.models import Payment, PaymentStatus
from payment_service.schemas import WebhookEvent

logger = logging.getLogger(__name__)


class ReconcileResult(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_PAYMENT = "unknown_payment"


CHARGE_EVENTS = {
    "payment.completed": PaymentStatus.COMPLETED,
    "payment.failed": PaymentStatus.FAILED,
}
REFUND_EVENT = "payment.refunded"


class ReconciliationHandler:
    """Applies asynchronous gateway callbacks through the ledger's shared transitions."""

    def __init__(self, ledger, notifier):
        self.ledger = ledger
        self.notifier = notifier

    async def reconcile(self, event: WebhookEvent) -> ReconcileResult:
        logger.info(f"Received gateway event {event.event_type} (payment={event.payment_id}, txn={event.transaction_id})")

        payment = await self._find_payment(event)
        if payment is None:
            logger.warning(f"Gateway event {event.event_type} references an unknown payment, ignoring")
            return ReconcileResult.UNKNOWN_PAYMENT

        if event.event_type in CHARGE_EVENTS:
            return await self._charge(payment, event, CHARGE_EVENTS[event.event_type])
        if event.event_type == REFUND_EVENT:
            return await self._refund(payment, event)

        logger.warning(f"Unhandled gateway event type: {event.event_type}")
        return ReconcileResult.IGNORED

    async def _find_payment(self, event: WebhookEvent) -> Optional[Payment]:
        if event.payment_id:
            payment = await self.ledger.get_payment(event.payment_id)
            if payment is not None:
                return payment
        if event.transaction_id:
            return await self.ledger.get_payment_by_transaction(event.transaction_id)
        return None

    async def _charge(self, payment: Payment, event: WebhookEvent, status: PaymentStatus) -> ReconcileResult:
        outcome = GatewayOutcome(
            status=status,
            transaction_id=event.transaction_id or payment.gateway_transaction_id,
            failure_reason=event.failure_reason if status is PaymentStatus.FAILED else None,
            raw_response=event.model_dump(mode="json", exclude_none=True),
        )
        payment, applied = await self.ledger.apply_outcome(payment.id, outcome)
        if not applied:
            logger.warning(f"Duplicate or stale {event.event_type} for payment {payment.id}")
            return ReconcileResult.DUPLICATE
        await self.notifier.payment_finalized(payment)
        return ReconcileResult.APPLIED

    async def _refund(self, payment: Payment, event: WebhookEvent) -> ReconcileResult:
        amount = event.refund_amount or event.amount
        if amount is None:
            logger.warning(f"Refund event for payment {payment.id} carries no amount, ignoring")
            return ReconcileResult.IGNORED
        refund_id = event.refund_id or event.event_id
        if not refund_id:
            # without a gateway id a redelivery could not be told apart from a new refund
            logger.warning(f"Refund event for payment {payment.id} carries no refund or event id, ignoring")
            return ReconcileResult.IGNORED

        try:
            payment, applied = await self.ledger.apply_refund(
                payment.id,
                amount,
                refund_id=refund_id,
                reason="gateway webhook",
                actor="gateway",
            )
        except (RefundExceedsBalanceError, ValidationError) as e:
            logger.warning(f"Refund event for payment {payment.id} rejected: {e}")
            return ReconcileResult.IGNORED

        if not applied:
            logger.warning(f"Duplicate refund event for payment {payment.id}")
            return ReconcileResult.DUPLICATE
        await self.notifier.refund_processed(payment, amount, "gateway webhook")
        return ReconcileResult.APPLIED
