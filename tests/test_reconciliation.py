from decimal import Decimal

import pytest

from payment_service.gateway import GatewaySimulator
from payment_service.ledger import PaymentLedger
from payment_service.models import PaymentMethodType, PaymentStatus
from payment_service.reconciliation import ReconcileResult
from payment_service.schemas import WebhookEvent

CARD = PaymentMethodType.CREDIT_CARD


@pytest.fixture
async def completed_payment(ledger, add_order, card):
    add_order("order-1", "customer-1", "250.00")
    return (await ledger.submit("order-1", "customer-1", Decimal("250.00"), CARD, card)).payment


@pytest.fixture
async def stuck_payment(session_factory, order_service, notifier, add_order, card):
    slow = PaymentLedger(
        session_factory,
        GatewaySimulator(processing_delay=5),
        order_service,
        notifier,
        gateway_timeout=0.01,
    )
    add_order("order-2", "customer-1", "40.00")
    return (await slow.submit("order-2", "customer-1", Decimal("40.00"), CARD, card)).payment


@pytest.mark.asyncio
async def test_webhook_completes_a_timed_out_payment(reconciler, ledger, stuck_payment, notifier):
    event = WebhookEvent(event_type="payment.completed", payment_id=stuck_payment.id, transaction_id="txn_late")

    result = await reconciler.reconcile(event)

    assert result is ReconcileResult.APPLIED
    payment = await ledger.get_payment(stuck_payment.id)
    assert payment.status is PaymentStatus.COMPLETED
    assert payment.gateway_transaction_id == "txn_late"
    assert payment.processed_at is not None
    notifier.payment_finalized.assert_awaited_once()


@pytest.mark.asyncio
async def test_redelivered_completed_event_notifies_once(reconciler, stuck_payment, notifier):
    event = WebhookEvent(event_type="payment.completed", payment_id=stuck_payment.id, transaction_id="txn_late")

    assert await reconciler.reconcile(event) is ReconcileResult.APPLIED
    assert await reconciler.reconcile(event) is ReconcileResult.DUPLICATE

    notifier.payment_finalized.assert_awaited_once()


@pytest.mark.asyncio
async def test_webhook_echo_of_sync_result_is_a_duplicate(reconciler, ledger, completed_payment, notifier):
    event = WebhookEvent(event_type="payment.completed", transaction_id=completed_payment.gateway_transaction_id)

    result = await reconciler.reconcile(event)

    assert result is ReconcileResult.DUPLICATE
    # only the synchronous path notified
    notifier.payment_finalized.assert_awaited_once()
    payment = await ledger.get_payment(completed_payment.id)
    assert payment.processed_at == completed_payment.processed_at
    assert payment.refund_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_late_failure_cannot_overwrite_completion(reconciler, ledger, completed_payment):
    event = WebhookEvent(
        event_type="payment.failed",
        payment_id=completed_payment.id,
        transaction_id="txn_other",
        failure_reason="Network timeout",
    )

    assert await reconciler.reconcile(event) is ReconcileResult.DUPLICATE

    payment = await ledger.get_payment(completed_payment.id)
    assert payment.status is PaymentStatus.COMPLETED
    assert payment.failure_reason is None


@pytest.mark.asyncio
async def test_webhook_failure_records_reason(reconciler, ledger, stuck_payment, notifier):
    event = WebhookEvent(
        event_type="payment.failed",
        payment_id=stuck_payment.id,
        transaction_id="txn_f",
        failure_reason="Transaction flagged for fraud",
    )

    assert await reconciler.reconcile(event) is ReconcileResult.APPLIED

    payment = await ledger.get_payment(stuck_payment.id)
    assert payment.status is PaymentStatus.FAILED
    assert payment.failure_reason == "Transaction flagged for fraud"


@pytest.mark.asyncio
async def test_refund_events_are_deduplicated(reconciler, ledger, completed_payment, notifier):
    event = WebhookEvent(
        event_type="payment.refunded",
        payment_id=completed_payment.id,
        refund_id="txn_refund_1",
        refund_amount=Decimal("50.00"),
    )

    assert await reconciler.reconcile(event) is ReconcileResult.APPLIED
    assert await reconciler.reconcile(event) is ReconcileResult.DUPLICATE

    payment = await ledger.get_payment(completed_payment.id)
    assert payment.refund_amount == Decimal("50.00")
    assert payment.status is PaymentStatus.COMPLETED
    notifier.refund_processed.assert_awaited_once()


@pytest.mark.asyncio
async def test_refund_event_without_gateway_id_is_ignored_on_every_delivery(
    reconciler, ledger, completed_payment, notifier
):
    event = WebhookEvent(
        event_type="payment.refunded",
        payment_id=completed_payment.id,
        status="refunded",
        refund_amount=Decimal("30.00"),
    )

    assert await reconciler.reconcile(event) is ReconcileResult.IGNORED
    assert await reconciler.reconcile(event) is ReconcileResult.IGNORED

    payment = await ledger.get_payment(completed_payment.id)
    assert payment.refund_amount == Decimal("0.00")
    assert payment.status is PaymentStatus.COMPLETED
    notifier.refund_processed.assert_not_awaited()


@pytest.mark.asyncio
async def test_refund_event_falls_back_to_event_id(reconciler, ledger, completed_payment, notifier):
    event = WebhookEvent(
        event_type="payment.refunded",
        payment_id=completed_payment.id,
        event_id="evt_123",
        refund_amount=Decimal("30.00"),
    )

    assert await reconciler.reconcile(event) is ReconcileResult.APPLIED
    assert await reconciler.reconcile(event) is ReconcileResult.DUPLICATE

    assert (await ledger.get_payment(completed_payment.id)).refund_amount == Decimal("30.00")
    notifier.refund_processed.assert_awaited_once()


@pytest.mark.asyncio
async def test_refund_events_accumulate_to_refunded(reconciler, ledger, completed_payment):
    for refund_id, amount in (("r1", "200.00"), ("r2", "50.00")):
        await reconciler.reconcile(
            WebhookEvent(event_type="payment.refunded", payment_id=completed_payment.id, refund_id=refund_id, amount=Decimal(amount))
        )

    payment = await ledger.get_payment(completed_payment.id)
    assert payment.refund_amount == Decimal("250.00")
    assert payment.status is PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_event_over_balance_is_ignored(reconciler, ledger, completed_payment):
    event = WebhookEvent(
        event_type="payment.refunded",
        payment_id=completed_payment.id,
        refund_id="r-big",
        refund_amount=Decimal("300.00"),
    )

    assert await reconciler.reconcile(event) is ReconcileResult.IGNORED
    assert (await ledger.get_payment(completed_payment.id)).refund_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_unknown_payment(reconciler):
    event = WebhookEvent(event_type="payment.completed", payment_id="does-not-exist")

    assert await reconciler.reconcile(event) is ReconcileResult.UNKNOWN_PAYMENT


@pytest.mark.asyncio
async def test_unhandled_event_type(reconciler, completed_payment):
    event = WebhookEvent(event_type="payment.disputed", payment_id=completed_payment.id)

    assert await reconciler.reconcile(event) is ReconcileResult.IGNORED


def test_event_needs_a_payment_reference():
    with pytest.raises(ValueError):
        WebhookEvent(event_type="payment.completed")
