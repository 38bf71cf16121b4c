import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from aio_pika.exceptions import AMQPConnectionError

from payment_service.messaging import PAYMENT_EXCHANGE, EventPublisher


@pytest.mark.asyncio
async def test_publish_serializes_decimals():
    publisher = EventPublisher("amqp://test")
    publisher.exchange = AsyncMock()

    await publisher.publish("payment.processed", {"event_type": "PaymentProcessed", "amount": Decimal("12.50")})

    message = publisher.exchange.publish.await_args.args[0]
    assert publisher.exchange.publish.await_args.kwargs["routing_key"] == "payment.processed"
    assert json.loads(message.body) == {"event_type": "PaymentProcessed", "amount": "12.50"}


@pytest.mark.asyncio
async def test_publish_without_connection_drops_event():
    publisher = EventPublisher("amqp://test")

    # no exception, nothing to publish to
    await publisher.publish("payment.failed", {"event_type": "PaymentFailed"})


@pytest.mark.asyncio
async def test_connect_declares_topic_exchange():
    channel = AsyncMock()
    connection = AsyncMock()
    connection.channel.return_value = channel

    with patch("payment_service.messaging.aio_pika.connect_robust", new=AsyncMock(return_value=connection)):
        publisher = EventPublisher("amqp://test")
        await publisher.connect()

    assert channel.declare_exchange.await_args.args[0] == PAYMENT_EXCHANGE
    assert publisher.exchange is channel.declare_exchange.return_value

    await publisher.close()
    connection.close.assert_awaited_once()
    assert publisher.exchange is None


@pytest.mark.asyncio
async def test_connect_failure_is_logged_not_raised():
    failing = AsyncMock(side_effect=AMQPConnectionError("refused"))

    with patch("payment_service.messaging.aio_pika.connect_robust", new=failing):
        publisher = EventPublisher("amqp://test")
        await publisher.connect()

    assert publisher.exchange is None
