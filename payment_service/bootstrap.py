import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from payment_service.collaborators import build_collaborator_clients
from payment_service.config import Settings
from payment_service.gateway import GatewayClient, GatewaySimulator
from payment_service.ledger import PaymentLedger
from payment_service.messaging import EventPublisher
from payment_service.notifier import CollaboratorNotifier
from payment_service.payment_methods import PaymentMethodStore
from payment_service.reconciliation import ReconciliationHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    ledger: PaymentLedger
    payment_methods: PaymentMethodStore
    reconciler: ReconciliationHandler
    gateway: GatewayClient
    notifier: CollaboratorNotifier
    http: httpx.AsyncClient
    publisher: Optional[EventPublisher] = None

    async def close(self) -> None:
        await self.http.aclose()
        if self.publisher is not None:
            await self.publisher.close()


async def build_services(settings: Settings, session_factory, gateway: Optional[GatewayClient] = None) -> Services:
    """Wire the ledger and its collaborators from settings."""
    gateway = gateway or GatewaySimulator.from_config(settings.gateway)
    http = httpx.AsyncClient(timeout=settings.collaborators.timeout)
    order_service, notification_service = build_collaborator_clients(settings.collaborators, http)

    publisher = None
    if settings.publish_events:
        publisher = EventPublisher(settings.rabbitmq_url)
        await publisher.connect()

    notifier = CollaboratorNotifier(order_service, notification_service, publisher)
    ledger = PaymentLedger(
        session_factory,
        gateway,
        order_service,
        notifier,
        gateway_timeout=settings.gateway.timeout,
    )
    logger.info(
        f"Payment services ready (gateway success rate {settings.gateway.success_rate}%, "
        f"events {'on' if publisher else 'off'})"
    )
    return Services(
        ledger=ledger,
        payment_methods=PaymentMethodStore(session_factory, gateway),
        reconciler=ReconciliationHandler(ledger, notifier),
        gateway=gateway,
        notifier=notifier,
        http=http,
        publisher=publisher,
    )
