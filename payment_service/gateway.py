import asyncio
import enum
import logging
import random
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from payment_service.config import GatewayConfig
from payment_service.exceptions import GatewayError
from payment_service.fees import to_money
from payment_service.models import PaymentMethodType, PaymentStatus
from payment_service.schemas import BillingAddress, CardDetails

logger = logging.getLogger(__name__)

GATEWAY_NAME = "FoodDelivery Simulator"


class Scenario(enum.Enum):
    SUCCESS = ("success", None, None)
    INSUFFICIENT_FUNDS = ("insufficient_funds", "Insufficient funds", "INSUFFICIENT_FUNDS")
    INVALID_CARD = ("invalid_card", "Invalid card details", "INVALID_CARD")
    EXPIRED_CARD = ("expired_card", "Card has expired", "EXPIRED_CARD")
    NETWORK_ERROR = ("network_error", "Network timeout", "NETWORK_TIMEOUT")
    FRAUD_DETECTED = ("fraud_detected", "Transaction flagged for fraud", "FRAUD_DETECTED")

    def __init__(self, code, failure_reason, error_code):
        self.code = code
        self.failure_reason = failure_reason
        self.error_code = error_code

    @property
    def succeeded(self) -> bool:
        return self is Scenario.SUCCESS


AMOUNT_OVERRIDES = {
    Decimal("13.13"): Scenario.INSUFFICIENT_FUNDS,
    Decimal("14.14"): Scenario.INVALID_CARD,
    Decimal("15.15"): Scenario.EXPIRED_CARD,
    Decimal("16.16"): Scenario.NETWORK_ERROR,
    Decimal("17.17"): Scenario.FRAUD_DETECTED,
}

CARD_OVERRIDES = (
    ("4000000000000002", Scenario.INVALID_CARD),
    ("4000000000000069", Scenario.EXPIRED_CARD),
)

RANDOM_FAILURES = (
    Scenario.INSUFFICIENT_FUNDS,
    Scenario.INVALID_CARD,
    Scenario.NETWORK_ERROR,
    Scenario.FRAUD_DETECTED,
)

HIGH_VALUE_THRESHOLD = Decimal("500")
HIGH_VALUE_PENALTY = 20

SUPPORTED_METHODS = tuple(m.value for m in PaymentMethodType)


def decide_scenario(amount, card_number: Optional[str], success_rate: int, rng: random.Random) -> Scenario:
    """Pick the simulated outcome for a charge.

    Rules are checked in order: fixed test amounts, the high-value tier,
    sentinel card numbers, then a draw against ``success_rate``.
    """
    amount = to_money(amount)

    override = AMOUNT_OVERRIDES.get(amount)
    if override is not None:
        return override

    if amount > HIGH_VALUE_THRESHOLD:
        if rng.random() * 100 < success_rate - HIGH_VALUE_PENALTY:
            return Scenario.SUCCESS
        return Scenario.INSUFFICIENT_FUNDS

    if card_number:
        for prefix, scenario in CARD_OVERRIDES:
            if card_number.startswith(prefix):
                return scenario

    if rng.random() * 100 < success_rate:
        return Scenario.SUCCESS
    return rng.choice(RANDOM_FAILURES)


@dataclass(frozen=True)
class GatewayOutcome:
    status: PaymentStatus
    transaction_id: Optional[str]
    reference: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)
    scenario: Optional[Scenario] = None

    @property
    def succeeded(self) -> bool:
        return self.status is PaymentStatus.COMPLETED


@dataclass(frozen=True)
class RefundOutcome:
    success: bool
    refund_id: str
    error: Optional[str] = None
    error_code: Optional[str] = None


class GatewayClient(ABC):
    """Contract the ledger and the payment method store hold with a payment gateway."""

    @abstractmethod
    async def attempt(
        self,
        amount: Decimal,
        method: PaymentMethodType,
        card: Optional[CardDetails] = None,
        billing: Optional[BillingAddress] = None,
        currency: str = "USD",
        payment_id: Optional[str] = None,
    ) -> GatewayOutcome:
        ...

    @abstractmethod
    async def refund_attempt(self, transaction_id: str, amount: Decimal) -> RefundOutcome:
        ...

    @abstractmethod
    async def tokenize(self, method: PaymentMethodType, card: Optional[CardDetails] = None) -> str:
        ...


def generate_transaction_id() -> str:
    return "txn_" + secrets.token_hex(16)


def generate_reference() -> str:
    return "ref_" + secrets.token_hex(8).upper()


def generate_payment_token() -> str:
    return "pm_" + secrets.token_hex(24)


class GatewaySimulator(GatewayClient):
    def __init__(
        self,
        success_rate: int = 85,
        processing_delay: float = 2.0,
        refund_delay: float = 1.0,
        refund_success_rate: int = 95,
        tokenize_delay: float = 0.5,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
    ):
        self.success_rate = success_rate
        self.processing_delay = processing_delay
        self.refund_delay = refund_delay
        self.refund_success_rate = refund_success_rate
        self.tokenize_delay = tokenize_delay
        self.rng = rng if rng is not None else random.Random(seed)
        self._started = time.monotonic()

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "GatewaySimulator":
        return cls(
            success_rate=config.success_rate,
            processing_delay=config.processing_delay,
            refund_delay=config.refund_delay,
            refund_success_rate=config.refund_success_rate,
            tokenize_delay=config.tokenize_delay,
            seed=config.seed,
        )

    async def attempt(self, amount, method, card=None, billing=None, currency="USD", payment_id=None):
        logger.info(f"Processing payment {payment_id} ({method.value}, {amount} {currency})")
        await asyncio.sleep(self.processing_delay)

        scenario = decide_scenario(amount, card.number if card else None, self.success_rate, self.rng)
        raw_response = {
            "gateway": GATEWAY_NAME,
            "timestamp": datetime.utcnow().isoformat(),
            "processing_time_ms": int(self.processing_delay * 1000),
            "scenario": scenario.code,
        }
        if scenario.succeeded:
            raw_response["message"] = "Payment processed successfully"
        else:
            raw_response["error_code"] = scenario.error_code

        outcome = GatewayOutcome(
            status=PaymentStatus.COMPLETED if scenario.succeeded else PaymentStatus.FAILED,
            transaction_id=generate_transaction_id(),
            reference=generate_reference(),
            failure_reason=scenario.failure_reason,
            raw_response=raw_response,
            scenario=scenario,
        )
        logger.info(f"Payment {outcome.status.value}: {payment_id} - {scenario.code}")
        return outcome

    async def refund_attempt(self, transaction_id, amount):
        logger.info(f"Processing refund of {amount} for transaction {transaction_id}")
        await asyncio.sleep(self.refund_delay)

        refund_id = generate_transaction_id()
        if self.rng.random() * 100 < self.refund_success_rate:
            return RefundOutcome(success=True, refund_id=refund_id)
        return RefundOutcome(
            success=False,
            refund_id=refund_id,
            error="Refund processing failed",
            error_code="REFUND_FAILED",
        )

    async def tokenize(self, method, card=None):
        await asyncio.sleep(self.tokenize_delay)
        if method.is_card:
            if card is None or not card.number:
                raise GatewayError("Card number is required")
            if not card.number.isdigit() or not 13 <= len(card.number) <= 19:
                raise GatewayError("Invalid card number")
        return generate_payment_token()

    def status(self) -> dict:
        return {
            "status": "active",
            "success_rate": self.success_rate,
            "processing_delay_ms": int(self.processing_delay * 1000),
            "refund_success_rate": self.refund_success_rate,
            "supported_methods": list(SUPPORTED_METHODS),
            "uptime": round(time.monotonic() - self._started, 3),
        }
