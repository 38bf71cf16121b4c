import json
import logging

import aio_pika
from aio_pika.exceptions import AMQPError

logger = logging.getLogger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"


class EventPublisher:
    """Publishes payment events to a durable topic exchange."""

    def __init__(self, rabbitmq_url: str, exchange_name: str = PAYMENT_EXCHANGE):
        self.rabbitmq_url = rabbitmq_url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    async def connect(self) -> None:
        try:
            self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info(f"RabbitMQ publisher ready on {self.exchange_name}")
        except (AMQPError, ConnectionError) as e:
            logger.error(f"Error setting up RabbitMQ publisher: {e}")

    async def publish(self, routing_key: str, message_data: dict) -> None:
        if self.exchange is None:
            logger.warning(f"RabbitMQ exchange not available, dropping {message_data['event_type']}")
            return

        message = aio_pika.Message(
            json.dumps(message_data, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
            logger.info(f"Published event to {routing_key}: {message_data['event_type']}")
        except (AMQPError, ConnectionError) as e:
            logger.error(f"Error publishing event to {routing_key}: {e}")

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
        self.connection = self.channel = self.exchange = None
