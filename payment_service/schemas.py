from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from payment_service.models import PaymentMethodType, PaymentStatus


class CardDetails(BaseModel):
    number: str = Field(..., examples=["4242 4242 4242 4242"])
    exp_month: int = Field(..., ge=1, le=12)
    exp_year: int = Field(..., ge=2000, le=2100)
    cvc: str = Field(..., pattern=r"^\d{3,4}$")
    holder_name: str = Field(..., max_length=100)

    @field_validator("number")
    @classmethod
    def strip_separators(cls, v: str) -> str:
        return v.replace(" ", "").replace("-", "")

    def __repr__(self) -> str:
        return f"CardDetails(last_four={self.number[-4:]!r})"

    __str__ = __repr__


class BillingAddress(BaseModel):
    street: str = Field(..., max_length=100)
    city: str = Field(..., max_length=50)
    state: str = Field(..., max_length=50)
    zip_code: str = Field(..., max_length=20)
    country: str = Field(..., min_length=2, max_length=2)


class PaymentCreate(BaseModel):
    order_id: str = Field(..., max_length=36, examples=["order-123"])
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    currency: str = Field("USD", min_length=3, max_length=3)
    payment_method: PaymentMethodType
    card_details: Optional[CardDetails] = None
    billing_address: Optional[BillingAddress] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def card_required_for_cards(self):
        if self.payment_method.is_card and self.card_details is None:
            raise ValueError("card_details is required for card payments")
        return self


class RefundCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=255)


class CancelCreate(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class PaymentMethodCreate(BaseModel):
    type: PaymentMethodType
    card_details: Optional[CardDetails] = None
    billing_address: Optional[BillingAddress] = None
    is_default: bool = False


class PaymentRead(BaseModel):
    """Payment as seen by customers; the raw gateway response is left out."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    payment_method_type: PaymentMethodType
    status: PaymentStatus
    gateway_transaction_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    processing_fee: Decimal
    refund_amount: Decimal
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("payment_metadata", "metadata"))
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentAdminRead(PaymentRead):
    gateway_raw_response: Optional[Dict[str, Any]] = None


class PaymentResult(BaseModel):
    success: bool
    message: str
    # admin callers get the raw gateway response
    payment: Union[PaymentAdminRead, PaymentRead]


class RefundRead(BaseModel):
    success: bool
    message: str
    payment_id: str
    refund_id: Optional[str] = None
    amount: Decimal
    reason: Optional[str] = None
    refund_amount: Decimal
    status: PaymentStatus


class PaymentMethodRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    type: PaymentMethodType
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    card_holder_name: Optional[str] = None
    billing_address: Optional[BillingAddress] = None
    is_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PaymentStats(BaseModel):
    total_transactions: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_fees: Decimal = Decimal("0.00")
    total_refunds: Decimal = Decimal("0.00")
    successful_payments: int = 0
    failed_payments: int = 0
    refunded_payments: int = 0
    average_transaction_amount: Optional[Decimal] = None


class RevenuePeriod(BaseModel):
    period: str
    transaction_count: int
    total_revenue: Decimal
    total_fees: Decimal
    successful_count: int


class WebhookEvent(BaseModel):
    """Asynchronous gateway callback, delivered over HTTP or the gateway queue."""

    event_type: str = Field(..., examples=["payment.completed"])
    event_id: Optional[str] = None
    payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    # payment.refunded carries the refunded amount in either field
    refund_amount: Optional[Decimal] = Field(None, gt=0)
    amount: Optional[Decimal] = Field(None, gt=0)

    @model_validator(mode="after")
    def payment_reference_required(self):
        if not self.payment_id and not self.transaction_id:
            raise ValueError("payment_id or transaction_id is required")
        return self


class WebhookAck(BaseModel):
    message: str
    result: str


class WebhookTestRequest(BaseModel):
    payment_id: str
    event_type: str = "payment.completed"


class SimulatorStatus(BaseModel):
    status: str
    success_rate: int
    processing_delay_ms: int
    refund_success_rate: int
    supported_methods: List[str]
    uptime: float
