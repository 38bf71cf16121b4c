import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payment_service.circuit_breaker import CircuitBreaker
from payment_service.config import CollaboratorConfig
from payment_service.exceptions import CollaboratorError
from payment_service.fees import to_money

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, httpx.TransportError)


@dataclass(frozen=True)
class OrderSummary:
    order_id: str
    customer_id: str
    total_amount: Decimal


class ServiceClient:
    """HTTP client for one collaborator: bounded timeout, tenacity retries, circuit breaker."""

    def __init__(
        self,
        name: str,
        base_url: str,
        http: httpx.AsyncClient,
        breaker: CircuitBreaker,
        api_key: str = "",
        max_attempts: int = 3,
        wait=None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.breaker = breaker
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)

    async def request(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        self.breaker.before_call()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.wait,
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    response = await self.http.request(
                        method,
                        f"{self.base_url}{path}",
                        json=json,
                        headers={"X-Service-Key": self.api_key, "X-Service-Name": "payment-service"},
                    )
                    if response.status_code >= 500 or response.status_code == 429:
                        response.raise_for_status()
        except (httpx.HTTPError, RetryError) as e:
            self.breaker.record_failure()
            logger.error(f"{self.name} request {method} {path} failed after retries: {e}")
            raise CollaboratorError(self.name, str(e)) from e
        except BaseException:
            # cancelled or unexpected error: no verdict on the collaborator's health
            self.breaker.release_probe()
            raise
        self.breaker.record_success()
        return response


class OrderServiceClient(ServiceClient):
    async def get_order(self, order_id: str) -> Optional[OrderSummary]:
        response = await self.request("GET", f"/api/orders/{order_id}")
        if response.status_code == 404:
            return None
        if response.is_error:
            raise CollaboratorError(self.name, f"unexpected status {response.status_code}")
        body = response.json()
        data = body.get("data", body) if isinstance(body, dict) else body
        return OrderSummary(
            order_id=order_id,
            customer_id=str(data["customer_id"]),
            total_amount=to_money(data["total_amount"]),
        )

    async def update_order_payment_status(self, order_id: str, status: str, method: Optional[str] = None) -> None:
        response = await self.request(
            "PATCH",
            f"/api/orders/{order_id}/payment-status",
            json={"payment_status": status, "payment_method": method},
        )
        if response.is_error:
            raise CollaboratorError(self.name, f"unexpected status {response.status_code}")


class NotificationServiceClient(ServiceClient):
    async def notify(self, user_id: str, notification: Dict[str, Any]) -> None:
        response = await self.request("POST", "/api/notifications", json={"user_id": user_id, **notification})
        if response.is_error:
            raise CollaboratorError(self.name, f"unexpected status {response.status_code}")


def build_collaborator_clients(config: CollaboratorConfig, http: httpx.AsyncClient):
    def breaker(name):
        return CircuitBreaker(
            name,
            failure_threshold=config.breaker_failure_threshold,
            window=config.breaker_window,
            reset_timeout=config.breaker_reset_timeout,
        )

    wait = wait_exponential(multiplier=config.backoff_base, max=config.backoff_max)
    orders = OrderServiceClient(
        "order-service",
        config.order_service_url,
        http,
        breaker("order-service"),
        api_key=config.api_key,
        max_attempts=config.max_attempts,
        wait=wait,
    )
    notifications = NotificationServiceClient(
        "notification-service",
        config.notification_service_url,
        http,
        breaker("notification-service"),
        api_key=config.api_key,
        max_attempts=config.max_attempts,
        wait=wait,
    )
    return orders, notifications
