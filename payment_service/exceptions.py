class PaymentError(Exception):
    """Base class for errors raised by the payment service."""


class ValidationError(PaymentError):
    """Malformed input, rejected before any state mutation."""


class AmountMismatchError(ValidationError):
    def __init__(self, order_id: str, expected, received):
        super().__init__(
            f"Payment amount {received} does not match order {order_id} total {expected}"
        )
        self.order_id = order_id
        self.expected = expected
        self.received = received


class InvalidTransitionError(ValidationError):
    def __init__(self, payment_id: str, current, target):
        super().__init__(f"Payment {payment_id} cannot move from {current.value} to {target.value}")
        self.payment_id = payment_id
        self.current = current
        self.target = target


class NotFoundError(PaymentError):
    pass


class AccessDeniedError(PaymentError):
    pass


class RefundExceedsBalanceError(PaymentError):
    def __init__(self, payment_id: str, requested, refundable):
        super().__init__(f"Refund amount cannot exceed {refundable} for payment {payment_id}")
        self.payment_id = payment_id
        self.requested = requested
        self.refundable = refundable


class GatewayError(PaymentError):
    """Transport-level failure talking to the payment gateway."""


class GatewayTimeoutError(GatewayError):
    pass


class CollaboratorError(PaymentError):
    """A call to the order or notification service failed."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class CircuitOpenError(CollaboratorError):
    def __init__(self, service: str):
        super().__init__(service, "circuit breaker open")
