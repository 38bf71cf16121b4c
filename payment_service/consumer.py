import asyncio
import logging

import aio_pika
from pydantic import ValidationError

from payment_service.reconciliation import ReconciliationHandler
from payment_service.schemas import WebhookEvent

logger = logging.getLogger(__name__)

GATEWAY_EXCHANGE = "gateway_exchange"
WEBHOOK_QUEUE = "payment_webhook_q"
WEBHOOK_BINDING = "payment.*"


async def process_gateway_event(message: aio_pika.IncomingMessage, handler: ReconciliationHandler):
    """Hand one queued gateway callback to the reconciliation handler.

    Malformed bodies are acknowledged and dropped; a failing handler rejects
    the message back onto the queue.
    """
    try:
        async with message.process(requeue=True):
            try:
                event = WebhookEvent.model_validate_json(message.body)
            except ValidationError as e:
                logger.error(f"Discarding malformed gateway event ({message.routing_key}): {e}")
                return

            result = await handler.reconcile(event)
            logger.info(f"Gateway event {event.event_type} for payment {event.payment_id or event.transaction_id}: {result.value}")
    except Exception:
        logger.exception(f"Error reconciling gateway event ({message.routing_key}), requeued")


async def start_consumer(handler: ReconciliationHandler, rabbitmq_url: str):
    connection = await aio_pika.connect_robust(rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=10)

        gateway_exchange = await channel.declare_exchange(GATEWAY_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        queue = await channel.declare_queue(WEBHOOK_QUEUE, durable=True)
        await queue.bind(gateway_exchange, WEBHOOK_BINDING)

        logger.info(f"Payment Service is listening for gateway events on {WEBHOOK_QUEUE}...")

        async def on_message(message: aio_pika.IncomingMessage):
            await process_gateway_event(message, handler)

        await queue.consume(on_message, no_ack=False)

        # Keep the consumer running
        await asyncio.Future()


async def main():
    from payment_service.bootstrap import build_services
    from payment_service.config import load_settings, setup_logging
    from payment_service.database import AsyncSessionLocal, init_db

    settings = load_settings()
    setup_logging(settings.log_level)
    await init_db()
    services = await build_services(settings, AsyncSessionLocal)
    try:
        await start_consumer(services.reconciler, settings.rabbitmq_url)
    finally:
        await services.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Payment gateway consumer stopped.")
