import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import bcrypt
from sqlalchemy import select, update

from payment_service.exceptions import NotFoundError, ValidationError
from payment_service.locks import KeyedLock
from payment_service.models import PaymentMethod
from payment_service.schemas import CardDetails, PaymentMethodCreate, PaymentMethodRead

logger = logging.getLogger(__name__)

TOKEN_HASH_ROUNDS = 10


def card_brand(number: str) -> str:
    if number.startswith("4"):
        return "visa"
    if number[:2] in ("34", "37"):
        return "amex"
    if number[:2] in ("51", "52", "53", "54", "55") or "2221" <= number[:4] <= "2720":
        return "mastercard"
    if number.startswith("6011") or number.startswith("65"):
        return "discover"
    return "unknown"


def validate_card(card: Optional[CardDetails], now: Optional[datetime] = None) -> CardDetails:
    if card is None:
        raise ValidationError("card_details is required for card payment methods")
    if not card.number.isdigit() or not 13 <= len(card.number) <= 19:
        raise ValidationError("Card number must be 13-19 digits")
    now = now or datetime.utcnow()
    if (card.exp_year, card.exp_month) < (now.year, now.month):
        raise ValidationError("Card has expired")
    return card


def hash_token(token: str) -> str:
    return bcrypt.hashpw(token.encode("utf-8"), bcrypt.gensalt(rounds=TOKEN_HASH_ROUNDS)).decode("utf-8")


class PaymentMethodStore:
    """Saved instruments per customer. At most one active default per customer."""

    def __init__(self, session_factory, gateway):
        self.session_factory = session_factory
        self.gateway = gateway
        self._locks = KeyedLock()

    async def add(self, customer_id: str, details: PaymentMethodCreate, make_default: bool = False) -> PaymentMethodRead:
        card = validate_card(details.card_details) if details.type.is_card else None

        token = await self.gateway.tokenize(details.type, card)
        # only a one-way reference to the gateway token is kept
        token_hash = await asyncio.to_thread(hash_token, token)

        method = PaymentMethod(
            customer_id=customer_id,
            type=details.type,
            card_last_four=card.number[-4:] if card else None,
            card_brand=card_brand(card.number) if card else None,
            card_exp_month=card.exp_month if card else None,
            card_exp_year=card.exp_year if card else None,
            card_holder_name=card.holder_name if card else None,
            billing_address=details.billing_address.model_dump() if details.billing_address else None,
            is_default=False,
            is_active=True,
            gateway_token_hash=token_hash,
        )

        async with self._locks.hold(customer_id):
            async with self.session_factory() as session:
                current_default = await self._default_for(session, customer_id)
                if make_default or details.is_default or current_default is None:
                    await self._clear_defaults(session, customer_id)
                    method.is_default = True
                session.add(method)
                await session.commit()

        logger.info(f"Payment method {method.id} ({method.type.value}) added for customer {customer_id}")
        return PaymentMethodRead.model_validate(method)

    async def list_active(self, customer_id: str) -> List[PaymentMethodRead]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentMethod)
                .where(PaymentMethod.customer_id == customer_id, PaymentMethod.is_active.is_(True))
                .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
            )
            return [PaymentMethodRead.model_validate(m) for m in result.scalars().all()]

    async def get(self, method_id: str, customer_id: str) -> PaymentMethodRead:
        async with self.session_factory() as session:
            method = await self._owned(session, method_id, customer_id)
            return PaymentMethodRead.model_validate(method)

    async def get_default(self, customer_id: str) -> Optional[PaymentMethodRead]:
        async with self.session_factory() as session:
            method = await self._default_for(session, customer_id)
            return PaymentMethodRead.model_validate(method) if method else None

    async def set_default(self, method_id: str, customer_id: str) -> PaymentMethodRead:
        async with self._locks.hold(customer_id):
            async with self.session_factory() as session:
                method = await self._owned(session, method_id, customer_id)
                if not method.is_active:
                    raise NotFoundError(f"Payment method {method_id} not found")
                await self._clear_defaults(session, customer_id)
                method.is_default = True
                await session.commit()
                logger.info(f"Payment method {method_id} is now default for customer {customer_id}")
                return PaymentMethodRead.model_validate(method)

    async def deactivate(self, method_id: str, customer_id: str) -> None:
        async with self._locks.hold(customer_id):
            async with self.session_factory() as session:
                method = await self._owned(session, method_id, customer_id)
                if not method.is_active:
                    return
                method.is_active = False
                method.is_default = False
                await session.commit()
                logger.info(f"Payment method {method_id} deactivated for customer {customer_id}")

    async def _owned(self, session, method_id: str, customer_id: str) -> PaymentMethod:
        method = await session.get(PaymentMethod, method_id)
        if method is None or method.customer_id != customer_id:
            raise NotFoundError(f"Payment method {method_id} not found")
        return method

    async def _default_for(self, session, customer_id: str) -> Optional[PaymentMethod]:
        result = await session.execute(
            select(PaymentMethod).where(
                PaymentMethod.customer_id == customer_id,
                PaymentMethod.is_active.is_(True),
                PaymentMethod.is_default.is_(True),
            )
        )
        return result.scalars().first()

    async def _clear_defaults(self, session, customer_id: str) -> None:
        await session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.customer_id == customer_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )
