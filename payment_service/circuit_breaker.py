import enum
import logging
import time
from typing import Callable

from payment_service.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class BreakerState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Closed/Open/HalfOpen breaker guarding one collaborator.

    ``failure_threshold`` consecutive failures inside ``window`` seconds open
    the breaker. After ``reset_timeout`` seconds one probe call is let
    through; its result closes or re-opens the breaker.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window: float = 60.0,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window = window
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._first_failure_at = None
        self._opened_at = None
        self._probe_in_flight = False

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            return BreakerState.HALF_OPEN
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must be short-circuited."""
        state = self.state
        if state is BreakerState.CLOSED:
            return
        if state is BreakerState.OPEN or self._probe_in_flight:
            raise CircuitOpenError(self.name)
        self._state = BreakerState.HALF_OPEN
        self._probe_in_flight = True
        logger.info(f"Circuit breaker HALF_OPEN for {self.name}, probing")

    def record_success(self) -> None:
        if self._state is not BreakerState.CLOSED:
            logger.info(f"Circuit breaker CLOSED for {self.name}")
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._first_failure_at = None
        self._opened_at = None
        self._probe_in_flight = False

    def release_probe(self) -> None:
        """Forget an in-flight probe that ended without a verdict (e.g. it was cancelled)."""
        if self._probe_in_flight:
            logger.info(f"Circuit breaker probe for {self.name} abandoned, next call will probe again")
        self._probe_in_flight = False

    def record_failure(self) -> None:
        now = self._clock()
        if self._state is BreakerState.HALF_OPEN:
            self._open(now)
            return

        if self._first_failure_at is None or now - self._first_failure_at > self.window:
            self._failures = 0
            self._first_failure_at = now
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = now
        self._probe_in_flight = False
        logger.warning(f"Circuit breaker OPEN for {self.name} after {self._failures} failures")
