import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from payment_service.bootstrap import Services, build_services
from payment_service.config import load_settings, setup_logging
from payment_service.consumer import start_consumer
from payment_service.database import AsyncSessionLocal, init_db
from payment_service.exceptions import (
    AccessDeniedError,
    CollaboratorError,
    GatewayError,
    NotFoundError,
    PaymentError,
    RefundExceedsBalanceError,
    ValidationError,
)
from payment_service.gateway import generate_transaction_id
from payment_service.models import Payment
from payment_service.schemas import (
    CancelCreate,
    PaymentAdminRead,
    PaymentCreate,
    PaymentMethodCreate,
    PaymentMethodRead,
    PaymentRead,
    PaymentResult,
    PaymentStats,
    RefundCreate,
    RefundRead,
    RevenuePeriod,
    SimulatorStatus,
    WebhookAck,
    WebhookEvent,
    WebhookTestRequest,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Service")

ADMIN = "admin"
PRIVILEGED_ROLES = {ADMIN, "sales"}

# most specific first
ERROR_STATUS = (
    (AccessDeniedError, 403),
    (NotFoundError, 404),
    (RefundExceedsBalanceError, 400),
    (ValidationError, 400),
    (GatewayError, 502),
    (CollaboratorError, 503),
)


@dataclass
class Caller:
    customer_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


def get_caller(
    x_customer_id: str = Header(...),
    x_user_role: str = Header("customer"),
) -> Caller:
    return Caller(customer_id=x_customer_id, role=x_user_role.lower())


def get_services(request: Request) -> Services:
    return request.app.state.services


def present(payment: Payment, caller: Caller) -> PaymentRead:
    if caller.is_admin:
        return PaymentAdminRead.model_validate(payment)
    return PaymentRead.model_validate(payment)


def payment_response(payment: Payment, caller: Caller) -> JSONResponse:
    # bypasses response_model so admin-only fields survive serialization
    return JSONResponse(content=present(payment, caller).model_dump(mode="json"))


def ensure_can_view(payment: Optional[Payment], caller: Caller, what: str) -> Payment:
    if payment is None:
        raise NotFoundError(f"{what} not found")
    if payment.customer_id != caller.customer_id and not caller.is_privileged:
        raise AccessDeniedError("Access denied")
    return payment


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"success": False, "message": str(exc)})


@app.on_event("startup")
async def startup_event():
    settings = load_settings()
    setup_logging(settings.log_level)
    await init_db()
    app.state.services = await build_services(settings, AsyncSessionLocal)
    if settings.consume_gateway_events:
        app.state.consumer_task = asyncio.create_task(
            start_consumer(app.state.services.reconciler, settings.rabbitmq_url)
        )


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "consumer_task", None)
    if task is not None:
        task.cancel()
    await app.state.services.close()


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "payment-service", "timestamp": datetime.utcnow().isoformat()}


@app.get("/simulator/status", response_model=SimulatorStatus)
async def simulator_status(services: Services = Depends(get_services)):
    return SimulatorStatus(**services.gateway.status())


@app.post("/simulator/webhook-test")
async def simulator_webhook_test(request_data: WebhookTestRequest):
    """Build a sample gateway callback for a payment; nothing is applied."""
    return {
        "success": True,
        "message": "Webhook simulation prepared",
        "payload": {
            "event_type": request_data.event_type,
            "payment_id": request_data.payment_id,
            "transaction_id": generate_transaction_id(),
            "timestamp": datetime.utcnow().isoformat(),
        },
    }


@app.post("/api/payments", response_model=PaymentResult)
async def process_payment(
    payment_data: PaymentCreate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = await services.ledger.submit(
        order_id=payment_data.order_id,
        customer_id=caller.customer_id,
        amount=payment_data.amount,
        method=payment_data.payment_method,
        card=payment_data.card_details,
        billing=payment_data.billing_address,
        currency=payment_data.currency,
        metadata=payment_data.metadata,
    )
    payment = present(result.payment, caller)

    if result.duplicate:
        status_code, message = 409, "Payment already exists for this order"
    elif result.pending:
        status_code, message = 202, "Payment is being processed"
    elif result.succeeded:
        status_code, message = 200, "Payment processed successfully"
    else:
        status_code, message = 402, f"Payment failed: {result.payment.failure_reason}"

    body = PaymentResult(success=result.succeeded, message=message, payment=payment)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.get("/api/payments/history", response_model=List[PaymentRead])
async def payment_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    payments = await services.ledger.list_customer_payments(caller.customer_id, limit=limit, offset=offset)
    return [PaymentRead.model_validate(p) for p in payments]


@app.get("/api/payments/stats", response_model=PaymentStats)
async def payment_stats(
    customer_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    if not caller.is_privileged:
        customer_id = caller.customer_id
    return await services.ledger.payment_stats(customer_id, start_date, end_date)


@app.get("/api/payments/analytics/revenue", response_model=List[RevenuePeriod])
async def revenue_analytics(
    period: str = "day",
    limit: int = Query(30, ge=1, le=365),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    if not caller.is_privileged:
        raise AccessDeniedError("Only admin or sales can view revenue analytics")
    return await services.ledger.revenue_by_period(period, limit)


@app.post("/api/payments/methods", response_model=PaymentMethodRead, status_code=201)
async def add_payment_method(
    method_data: PaymentMethodCreate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.payment_methods.add(caller.customer_id, method_data, make_default=method_data.is_default)


@app.get("/api/payments/methods", response_model=List[PaymentMethodRead])
async def list_payment_methods(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return await services.payment_methods.list_active(caller.customer_id)


@app.put("/api/payments/methods/{method_id}/default", response_model=PaymentMethodRead)
async def set_default_payment_method(
    method_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.payment_methods.set_default(method_id, caller.customer_id)


@app.delete("/api/payments/methods/{method_id}")
async def delete_payment_method(
    method_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    await services.payment_methods.deactivate(method_id, caller.customer_id)
    return {"success": True, "message": "Payment method removed successfully"}


@app.get("/api/payments/order/{order_id}", response_model=PaymentRead)
async def get_payment_by_order(
    order_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    payment = await services.ledger.get_payment_by_order(order_id)
    return payment_response(ensure_can_view(payment, caller, "Payment for order"), caller)


@app.get("/api/payments/{payment_id}", response_model=PaymentRead)
async def get_payment(
    payment_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    payment = await services.ledger.get_payment(payment_id)
    return payment_response(ensure_can_view(payment, caller, "Payment"), caller)


@app.post("/api/payments/{payment_id}/refund", response_model=RefundRead)
async def refund_payment(
    payment_id: str,
    refund_data: RefundCreate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    if not caller.is_privileged:
        raise AccessDeniedError("Only admin or sales can process refunds")

    result = await services.ledger.refund(payment_id, refund_data.amount, refund_data.reason, actor=caller.customer_id)
    body = RefundRead(
        success=result.success,
        message="Refund processed successfully" if result.success else f"Refund failed: {result.error}",
        payment_id=result.payment.id,
        refund_id=result.refund_id,
        amount=result.amount,
        reason=result.reason,
        refund_amount=result.payment.refund_amount,
        status=result.payment.status,
    )
    return JSONResponse(status_code=200 if result.success else 402, content=body.model_dump(mode="json"))


@app.post("/api/payments/{payment_id}/cancel", response_model=PaymentRead)
async def cancel_payment(
    payment_id: str,
    cancel_data: Optional[CancelCreate] = None,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    ensure_can_view(await services.ledger.get_payment(payment_id), caller, "Payment")
    payment = await services.ledger.cancel(payment_id, cancel_data.reason if cancel_data else None)
    return payment_response(payment, caller)


@app.post("/api/webhooks/payment", response_model=WebhookAck)
async def payment_webhook(event: WebhookEvent, services: Services = Depends(get_services)):
    result = await services.reconciler.reconcile(event)
    return WebhookAck(message="Webhook processed", result=result.value)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
