import asyncio
import json
import time
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from payment_service.circuit_breaker import BreakerState, CircuitBreaker
from payment_service.collaborators import (
    NotificationServiceClient,
    OrderServiceClient,
    build_collaborator_clients,
)
from payment_service.config import CollaboratorConfig
from payment_service.exceptions import CircuitOpenError, CollaboratorError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_client(cls, handler, threshold=5, clock=time.monotonic):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker("order-service", failure_threshold=threshold, reset_timeout=30, clock=clock)
    client = cls("order-service", "http://orders.test/", http, breaker, api_key="secret", max_attempts=3, wait=wait_none())
    return client, breaker


@pytest.mark.asyncio
async def test_get_order_reads_data_envelope():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"customer_id": "c-1", "total_amount": "42.50"}})

    client, _ = make_client(OrderServiceClient, handler)

    order = await client.get_order("o-1")

    assert order.customer_id == "c-1"
    assert order.total_amount == Decimal("42.50")
    assert seen[0].url == "http://orders.test/api/orders/o-1"
    assert seen[0].headers["X-Service-Key"] == "secret"


@pytest.mark.asyncio
async def test_get_order_missing_returns_none():
    client, breaker = make_client(OrderServiceClient, lambda request: httpx.Response(404))

    assert await client.get_order("nope") is None
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_retries_transient_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"customer_id": "c-1", "total_amount": 10})

    client, _ = make_client(OrderServiceClient, handler)

    order = await client.get_order("o-1")

    assert len(calls) == 3
    assert order.total_amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_exhausted_retries_raise_and_count_one_breaker_failure():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client, breaker = make_client(OrderServiceClient, handler)

    with pytest.raises(CollaboratorError):
        await client.update_order_payment_status("o-1", "paid", "credit_card")
    assert len(calls) == 3
    assert breaker.failures == 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"message": "bad"})

    client, _ = make_client(OrderServiceClient, handler)

    with pytest.raises(CollaboratorError):
        await client.update_order_payment_status("o-1", "paid")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_open_breaker_short_circuits():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    client, breaker = make_client(OrderServiceClient, handler, threshold=1)

    with pytest.raises(CollaboratorError):
        await client.get_order("o-1")
    assert breaker.state is BreakerState.OPEN

    with pytest.raises(CircuitOpenError):
        await client.get_order("o-1")
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_cancelled_half_open_call_does_not_wedge_the_breaker():
    clock = FakeClock()
    mode = {"response": "error"}

    def handler(request):
        if mode["response"] == "cancel":
            raise asyncio.CancelledError()
        if mode["response"] == "error":
            return httpx.Response(500)
        return httpx.Response(200, json={"customer_id": "c-1", "total_amount": "5.00"})

    client, breaker = make_client(OrderServiceClient, handler, threshold=1, clock=clock)
    with pytest.raises(CollaboratorError):
        await client.get_order("o-1")
    assert breaker.state is BreakerState.OPEN

    clock.now = 31
    mode["response"] = "cancel"
    with pytest.raises(asyncio.CancelledError):
        await client.get_order("o-1")
    assert breaker.state is BreakerState.HALF_OPEN

    mode["response"] = "ok"
    order = await client.get_order("o-1")

    assert order.total_amount == Decimal("5.00")
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_notify_posts_user_and_payload():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(201)

    client, _ = make_client(NotificationServiceClient, handler)

    await client.notify("c-1", {"type": "payment_completed", "payment_id": "p-1"})

    assert bodies == [{"user_id": "c-1", "type": "payment_completed", "payment_id": "p-1"}]


@pytest.mark.asyncio
async def test_build_collaborator_clients_uses_config():
    config = CollaboratorConfig(
        order_service_url="http://orders",
        notification_service_url="http://notify",
        api_key="k",
        breaker_failure_threshold=2,
    )
    async with httpx.AsyncClient() as http:
        orders, notifications = build_collaborator_clients(config, http)

    assert orders.base_url == "http://orders"
    assert notifications.base_url == "http://notify"
    assert orders.breaker is not notifications.breaker
    assert orders.breaker.failure_threshold == 2
