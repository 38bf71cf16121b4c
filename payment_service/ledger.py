"""Payment ledger: the one authoritative Payment per order and its state machine.

Both the synchronous gateway response and asynchronous webhooks go through
``apply_outcome`` / ``apply_refund``, which serialize writes per payment.
The first terminal status (completed or failed) wins; refunds only ever add
to ``refund_amount`` and are deduplicated by gateway refund id.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import case, func, literal_column, select
from sqlalchemy.exc import IntegrityError

from payment_service.exceptions import (
    AmountMismatchError,
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    RefundExceedsBalanceError,
    ValidationError,
)
from payment_service.fees import CENT, processing_fee, to_money
from payment_service.gateway import GatewayOutcome
from payment_service.locks import KeyedLock
from payment_service.models import (
    GatewayEventKind,
    Payment,
    PaymentGatewayEvent,
    PaymentMethodType,
    PaymentStatus,
    can_transition,
)
from payment_service.payment_methods import card_brand
from payment_service.schemas import BillingAddress, CardDetails, PaymentStats, RevenuePeriod

logger = logging.getLogger(__name__)

TERMINAL_CHARGE_STATES = (
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
)

# period -> (PostgreSQL to_char, SQLite strftime) bucket format
REVENUE_PERIODS = {
    "day": ("YYYY-MM-DD", "%Y-%m-%d"),
    "week": ("YYYY-WW", "%Y-%W"),
    "month": ("YYYY-MM", "%Y-%m"),
    "year": ("YYYY", "%Y"),
}


@dataclass
class SubmitResult:
    payment: Payment
    duplicate: bool = False
    # gateway timed out or was unreachable; payment left in processing
    pending: bool = False

    @property
    def succeeded(self) -> bool:
        return self.payment.status is PaymentStatus.COMPLETED


@dataclass
class RefundResult:
    payment: Payment
    success: bool
    amount: Decimal
    refund_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class PaymentLedger:
    def __init__(self, session_factory, gateway, order_service, notifier, gateway_timeout: float = 30.0):
        self.session_factory = session_factory
        self.gateway = gateway
        self.order_service = order_service
        self.notifier = notifier
        self.gateway_timeout = gateway_timeout
        self._locks = KeyedLock()

    # -- reads -------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            return await session.get(Payment, payment_id)

    async def get_payment_by_order(self, order_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.order_id == order_id))
            return result.scalar_one_or_none()

    async def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment).where(Payment.gateway_transaction_id == transaction_id)
            )
            return result.scalars().first()

    async def list_customer_payments(self, customer_id: str, limit: int = 20, offset: int = 0) -> List[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.customer_id == customer_id)
                .order_by(Payment.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def payment_stats(
        self,
        customer_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PaymentStats:
        def count_status(status):
            return func.count(case((Payment.status == status, 1)))

        query = select(
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.processing_fee), 0),
            func.coalesce(func.sum(Payment.refund_amount), 0),
            count_status(PaymentStatus.COMPLETED),
            count_status(PaymentStatus.FAILED),
            count_status(PaymentStatus.REFUNDED),
            func.avg(Payment.amount),
        )
        if customer_id:
            query = query.where(Payment.customer_id == customer_id)
        if start:
            query = query.where(Payment.created_at >= start)
        if end:
            query = query.where(Payment.created_at <= end)

        async with self.session_factory() as session:
            row = (await session.execute(query)).one()

        total, amount, fees, refunds, completed, failed, refunded, average = row
        return PaymentStats(
            total_transactions=total,
            total_amount=_cents(amount),
            total_fees=_cents(fees),
            total_refunds=_cents(refunds),
            successful_payments=completed,
            failed_payments=failed,
            refunded_payments=refunded,
            average_transaction_amount=_cents(average) if average is not None else None,
        )

    async def revenue_by_period(self, period: str = "day", limit: int = 30) -> List[RevenuePeriod]:
        """Completed-payment revenue bucketed by creation date, newest bucket first."""
        if period not in REVENUE_PERIODS:
            raise ValidationError(f"Unknown revenue period {period!r}, expected one of {', '.join(REVENUE_PERIODS)}")

        async with self.session_factory() as session:
            bucket = _period_bucket(session.get_bind().dialect.name, period).label("period")
            query = (
                select(
                    bucket,
                    func.count(Payment.id),
                    func.coalesce(func.sum(Payment.amount), 0),
                    func.coalesce(func.sum(Payment.processing_fee), 0),
                    func.count(case((Payment.status == PaymentStatus.COMPLETED, 1))),
                )
                .where(Payment.status == PaymentStatus.COMPLETED)
                .group_by(bucket)
                .order_by(bucket.desc())
                .limit(limit)
            )
            rows = (await session.execute(query)).all()

        return [
            RevenuePeriod(
                period=str(row[0]),
                transaction_count=row[1],
                total_revenue=_cents(row[2]),
                total_fees=_cents(row[3]),
                successful_count=row[4],
            )
            for row in rows
        ]

    async def find_stuck_payments(self, older_than: timedelta) -> List[Payment]:
        cutoff = datetime.utcnow() - older_than
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.status == PaymentStatus.PROCESSING, Payment.updated_at < cutoff)
                .order_by(Payment.updated_at)
            )
            return list(result.scalars().all())

    # -- submission --------------------------------------------------------

    async def submit(
        self,
        order_id: str,
        customer_id: str,
        amount,
        method: PaymentMethodType,
        card: Optional[CardDetails] = None,
        billing: Optional[BillingAddress] = None,
        currency: str = "USD",
        metadata: Optional[dict] = None,
    ) -> SubmitResult:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if method.is_card and card is None:
            raise ValidationError("card_details is required for card payments")

        existing = await self.get_payment_by_order(order_id)
        if existing is not None:
            logger.info(f"Payment already exists for order {order_id}: {existing.id}")
            return SubmitResult(existing, duplicate=True)

        order = await self.order_service.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.customer_id != customer_id:
            raise ValidationError(f"Order {order_id} does not belong to customer {customer_id}")
        if order.total_amount != amount:
            raise AmountMismatchError(order_id, order.total_amount, amount)

        payment, created = await self._insert_or_get(
            Payment(
                id=str(uuid4()),
                order_id=order_id,
                customer_id=customer_id,
                amount=amount,
                currency=currency.upper(),
                payment_method_type=method,
                status=PaymentStatus.PENDING,
                card_last_four=card.number[-4:] if card else None,
                card_brand=card_brand(card.number) if card else None,
                processing_fee=processing_fee(amount),
                refund_amount=Decimal("0.00"),
                payment_metadata=metadata or {},
            )
        )
        if not created:
            logger.info(f"Concurrent submission for order {order_id} lost the race to {payment.id}")
            return SubmitResult(payment, duplicate=True)

        payment = await self._transition(payment.id, PaymentStatus.PROCESSING)

        try:
            outcome = await asyncio.wait_for(
                self.gateway.attempt(amount, method, card, billing, currency=payment.currency, payment_id=payment.id),
                timeout=self.gateway_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Gateway timed out for payment {payment.id}, left in processing")
            return SubmitResult(payment, pending=True)
        except GatewayError as e:
            logger.warning(f"Gateway unavailable for payment {payment.id}, left in processing: {e}")
            return SubmitResult(payment, pending=True)

        payment, applied = await self.apply_outcome(payment.id, outcome)
        if applied:
            await self.notifier.payment_finalized(payment)
        return SubmitResult(payment)

    async def _insert_or_get(self, payment: Payment) -> Tuple[Payment, bool]:
        async with self.session_factory() as session:
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                conflict = e
            else:
                logger.info(f"Payment {payment.id} created for order {payment.order_id}")
                return payment, True

        existing = await self.get_payment_by_order(payment.order_id)
        if existing is None:
            # the constraint that fired was not the order_id one
            raise conflict
        return existing, False

    async def _transition(self, payment_id: str, target: PaymentStatus) -> Payment:
        async with self._locks.hold(payment_id):
            async with self.session_factory() as session:
                payment = await self._load_for_update(session, payment_id)
                if not can_transition(payment.status, target):
                    raise InvalidTransitionError(payment_id, payment.status, target)
                payment.status = target
                await session.commit()
                logger.info(f"Payment {payment_id} -> {target.value}")
                return payment

    async def cancel(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        async with self._locks.hold(payment_id):
            async with self.session_factory() as session:
                payment = await self._load_for_update(session, payment_id)
                if not can_transition(payment.status, PaymentStatus.CANCELLED):
                    raise InvalidTransitionError(payment_id, payment.status, PaymentStatus.CANCELLED)
                payment.status = PaymentStatus.CANCELLED
                payment.failure_reason = reason or "Cancelled before gateway submission"
                await session.commit()
                logger.info(f"Payment {payment_id} cancelled")
                return payment

    # -- shared transitions ------------------------------------------------

    async def apply_outcome(self, payment_id: str, outcome: GatewayOutcome) -> Tuple[Payment, bool]:
        """Apply a gateway charge outcome; returns the payment and whether anything changed."""
        async with self._locks.hold(payment_id):
            async with self.session_factory() as session:
                payment = await self._load_for_update(session, payment_id)

                if outcome.transaction_id and await self._already_applied(
                    session, GatewayEventKind.CHARGE, outcome.transaction_id
                ):
                    logger.info(f"Charge {outcome.transaction_id} already applied to payment {payment_id}")
                    return payment, False

                if payment.status in TERMINAL_CHARGE_STATES:
                    logger.warning(
                        f"Ignoring {outcome.status.value} outcome for payment {payment_id}: "
                        f"already {payment.status.value}"
                    )
                    return payment, False

                if not can_transition(payment.status, outcome.status):
                    logger.warning(
                        f"Ignoring {outcome.status.value} outcome for payment {payment_id} in {payment.status.value}"
                    )
                    return payment, False

                payment.status = outcome.status
                if outcome.transaction_id and payment.gateway_transaction_id is None:
                    payment.gateway_transaction_id = outcome.transaction_id
                if outcome.reference:
                    payment.gateway_reference = outcome.reference
                if outcome.raw_response:
                    payment.gateway_raw_response = outcome.raw_response
                if outcome.succeeded:
                    payment.failure_reason = None
                    if payment.processed_at is None:
                        payment.processed_at = datetime.utcnow()
                else:
                    payment.failure_reason = outcome.failure_reason or "Unknown error"

                if outcome.transaction_id:
                    session.add(
                        PaymentGatewayEvent(
                            payment_id=payment.id,
                            kind=GatewayEventKind.CHARGE,
                            external_id=outcome.transaction_id,
                            amount=payment.amount,
                            reason=payment.failure_reason,
                        )
                    )
                await session.commit()
                logger.info(f"Payment {payment_id} -> {payment.status.value}")
                return payment, True

    async def apply_refund(
        self,
        payment_id: str,
        amount,
        refund_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Tuple[Payment, bool]:
        """Add a gateway-confirmed refund; returns the payment and whether it was newly applied.

        ``refund_id`` is the gateway's id for the refund and is what makes
        redelivery a no-op, so it is mandatory here.
        """
        if not refund_id:
            raise ValidationError("Refund id is required to apply a gateway refund")
        async with self._locks.hold(payment_id):
            return await self._apply_refund_locked(payment_id, to_money(amount), refund_id, reason, actor)

    async def _apply_refund_locked(self, payment_id, amount, refund_id, reason, actor):
        async with self.session_factory() as session:
            payment = await self._load_for_update(session, payment_id)

            if await self._already_applied(session, GatewayEventKind.REFUND, refund_id):
                logger.info(f"Refund {refund_id} already applied to payment {payment_id}")
                return payment, False

            self._check_refundable(payment, amount)

            payment.refund_amount = payment.refund_amount + amount
            if payment.refund_amount >= payment.amount:
                payment.status = PaymentStatus.REFUNDED
            session.add(
                PaymentGatewayEvent(
                    payment_id=payment.id,
                    kind=GatewayEventKind.REFUND,
                    external_id=refund_id,
                    amount=amount,
                    reason=reason,
                    actor=actor,
                )
            )
            await session.commit()
            logger.info(
                f"Refund of {amount} applied to payment {payment_id}, "
                f"refunded {payment.refund_amount}/{payment.amount} ({payment.status.value})"
            )
            return payment, True

    # -- refunds -----------------------------------------------------------

    async def refund(self, payment_id: str, amount, reason: Optional[str] = None, actor: Optional[str] = None) -> RefundResult:
        amount = to_money(amount)

        # held across the gateway call so two refunds cannot both pass the balance check
        async with self._locks.hold(payment_id):
            payment = await self.get_payment(payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            if amount <= 0:
                raise ValidationError("Refund amount must be positive")
            self._check_refundable(payment, amount)

            try:
                outcome = await asyncio.wait_for(
                    self.gateway.refund_attempt(payment.gateway_transaction_id, amount),
                    timeout=self.gateway_timeout,
                )
            except asyncio.TimeoutError:
                raise GatewayTimeoutError(f"Gateway timed out refunding payment {payment_id}")

            if not outcome.success:
                logger.warning(f"Gateway declined refund of {amount} for payment {payment_id}: {outcome.error}")
                return RefundResult(payment, False, amount, outcome.refund_id, reason, outcome.error)

            # a synchronous confirmation is never redelivered
            refund_id = outcome.refund_id or f"local_{uuid4().hex}"
            payment, _ = await self._apply_refund_locked(payment_id, amount, refund_id, reason, actor)

        await self.notifier.refund_processed(payment, amount, reason)
        return RefundResult(payment, True, amount, refund_id, reason)

    @staticmethod
    def _check_refundable(payment: Payment, amount: Decimal) -> None:
        if amount > payment.refundable_amount:
            raise RefundExceedsBalanceError(payment.id, amount, payment.refundable_amount)
        if payment.status is not PaymentStatus.COMPLETED:
            raise InvalidTransitionError(payment.id, payment.status, PaymentStatus.REFUNDED)

    # -- helpers -----------------------------------------------------------

    async def _load_for_update(self, session, payment_id: str) -> Payment:
        result = await session.execute(select(Payment).where(Payment.id == payment_id).with_for_update())
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def _already_applied(self, session, kind: GatewayEventKind, external_id: str) -> bool:
        result = await session.execute(
            select(PaymentGatewayEvent.id).where(
                PaymentGatewayEvent.kind == kind,
                PaymentGatewayEvent.external_id == external_id,
            )
        )
        return result.first() is not None


def _period_bucket(dialect: str, period: str):
    # formats are inlined so SELECT and GROUP BY render the same expression
    pg_format, sqlite_format = REVENUE_PERIODS[period]
    if dialect == "postgresql":
        return func.to_char(Payment.created_at, literal_column(f"'{pg_format}'"))
    return func.strftime(literal_column(f"'{sqlite_format}'"), Payment.created_at)


def _cents(value) -> Decimal:
    # aggregates come back as float on some backends
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
