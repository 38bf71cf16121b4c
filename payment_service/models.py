import enum
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethodType(enum.Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"

    @property
    def is_card(self) -> bool:
        return self in (PaymentMethodType.CREDIT_CARD, PaymentMethodType.DEBIT_CARD)


class GatewayEventKind(enum.Enum):
    CHARGE = "charge"
    REFUND = "refund"


# source state -> allowed target states
VALID_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.CANCELLED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), nullable=False, unique=True, index=True)  # one payment per order
    customer_id = Column(String(36), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    payment_method_type = Column(Enum(PaymentMethodType), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    gateway_transaction_id = Column(String(100), nullable=True, index=True)
    gateway_reference = Column(String(100), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    card_brand = Column(String(20), nullable=True)
    processing_fee = Column(Numeric(8, 2), nullable=False)
    refund_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    failure_reason = Column(Text, nullable=True)
    gateway_raw_response = Column(JSON, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("refund_amount >= 0 AND refund_amount <= amount", name="ck_payments_refund_bound"),
    )

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.refund_amount

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, order_id={self.order_id}, status={self.status.value})>"


class PaymentGatewayEvent(Base):
    """External effects already applied to a payment (charges by transaction id, refunds by refund id)."""

    __tablename__ = "payment_gateway_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    kind = Column(Enum(GatewayEventKind), nullable=False)
    external_id = Column(String(100), nullable=False)
    amount = Column(Numeric(10, 2), nullable=True)
    reason = Column(Text, nullable=True)
    actor = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("kind", "external_id", name="uq_payment_gateway_events_kind_external_id"),
    )


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(String(36), nullable=False, index=True)
    type = Column(Enum(PaymentMethodType), nullable=False)
    card_last_four = Column(String(4), nullable=True)
    card_brand = Column(String(20), nullable=True)
    card_exp_month = Column(Integer, nullable=True)
    card_exp_year = Column(Integer, nullable=True)
    card_holder_name = Column(String(100), nullable=True)
    billing_address = Column(JSON, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    gateway_token_hash = Column(String(255), nullable=True)  # bcrypt hash, never returned
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
