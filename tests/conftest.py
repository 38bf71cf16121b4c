from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from payment_service.collaborators import OrderSummary
from payment_service.database import Base, create_session_factory
from payment_service.gateway import GatewaySimulator
from payment_service.ledger import PaymentLedger
from payment_service.payment_methods import PaymentMethodStore
from payment_service.reconciliation import ReconciliationHandler
from payment_service.schemas import CardDetails

TEST_CARD = "4242424242424242"


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions really use separate connections."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def gateway():
    # always succeeds unless a sentinel amount or card is used
    return GatewaySimulator(
        success_rate=100,
        processing_delay=0,
        refund_delay=0,
        refund_success_rate=100,
        tokenize_delay=0,
        seed=1234,
    )


@pytest.fixture
def orders():
    """order_id -> OrderSummary served by the fake order service."""
    return {}


@pytest.fixture
def order_service(orders):
    service = AsyncMock()
    service.get_order.side_effect = lambda order_id: orders.get(order_id)
    return service


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def ledger(session_factory, gateway, order_service, notifier):
    return PaymentLedger(session_factory, gateway, order_service, notifier, gateway_timeout=1.0)


@pytest.fixture
def reconciler(ledger, notifier):
    return ReconciliationHandler(ledger, notifier)


@pytest.fixture
def payment_methods(session_factory, gateway):
    return PaymentMethodStore(session_factory, gateway)


@pytest.fixture
def card():
    return CardDetails(number=TEST_CARD, exp_month=12, exp_year=2099, cvc="123", holder_name="Ada Lovelace")


@pytest.fixture
def add_order(orders):
    def _add(order_id="order-1", customer_id="customer-1", total="250.00"):
        orders[order_id] = OrderSummary(order_id=order_id, customer_id=customer_id, total_amount=Decimal(total))
        return orders[order_id]

    return _add
