"""
Circuit breaker for outbound payment gateway calls.

States:
- CLOSED: requests pass through
- OPEN: requests are rejected immediately until ``reset_timeout`` elapses
- HALF_OPEN: a limited number of trial requests decide whether to close again
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when the circuit breaker is open."""
    def __init__(self, message: str, circuit_name: str, time_until_retry: float):
        self.circuit_name = circuit_name
        self.time_until_retry = time_until_retry
        super().__init__(message)


class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker(name="payment:stripe", ignored_exceptions=(CardDeclined,))

        async with breaker:
            await gateway_request()

    Exceptions listed in ``ignored_exceptions`` are business-level rejections
    (a declined card, an already refunded charge) and do not count as
    failures of the remote service.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        ignored_exceptions: Tuple[Type[BaseException], ...] = (),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self.ignored_exceptions = ignored_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

        self._total_calls = 0
        self._total_failures = 0
        self._total_rejections = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def time_until_retry(self) -> float:
        if self._opened_at is None:
            return 0
        return max(0, self.reset_timeout - (time.time() - self._opened_at))

    def _set_state(self, state: CircuitState):
        previous, self._state = self._state, state
        if state == CircuitState.OPEN:
            self._opened_at = time.time()
            logger.warning(
                f"Circuit breaker '{self.name}' OPENED after {self._failure_count} failures. "
                f"Will retry after {self.reset_timeout}s"
            )
        elif state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._success_count = 0
            logger.info(f"Circuit breaker '{self.name}' transitioning to HALF_OPEN for recovery testing")
        else:
            self._failure_count = 0
            self._success_count = 0
            self._half_open_calls = 0
            self._opened_at = None
            if previous != CircuitState.CLOSED:
                logger.info(f"Circuit breaker '{self.name}' CLOSED - service recovered")

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                self._half_open_calls = max(0, self._half_open_calls - 1)
                if self._success_count >= self.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def record_failure(self):
        async with self._lock:
            self._total_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.failure_threshold:
                    self._set_state(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.OPEN and self.time_until_retry() <= 0:
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True

            self._total_rejections += 1
            return False

    async def __aenter__(self):
        self._total_calls += 1
        if not await self.can_execute():
            retry_in = self.time_until_retry()
            raise CircuitBreakerError(
                f"Circuit breaker '{self.name}' is OPEN. Retry after {retry_in:.1f}s",
                circuit_name=self.name,
                time_until_retry=retry_in,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None or (self.ignored_exceptions and issubclass(exc_type, self.ignored_exceptions)):
            await self.record_success()
        else:
            await self.record_failure()
        return False

    def get_metrics(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "total_calls": self._total_calls,
            "total_failures": self._total_failures,
            "total_rejections": self._total_rejections,
            "time_until_retry": self.time_until_retry() if self.is_open else 0,
        }

    async def reset(self):
        async with self._lock:
            self._set_state(CircuitState.CLOSED)


_breakers: Dict[str, CircuitBreaker] = {}


def get_payment_circuit(gateway_name: str, **kwargs) -> CircuitBreaker:
    """
    Shared breaker for one payment gateway. Keyword arguments only apply when
    the breaker is first created.
    """
    name = f"payment:{gateway_name}"
    if name not in _breakers:
        _breakers[name] = CircuitBreaker(name=name, **kwargs)
    return _breakers[name]


def get_all_circuit_metrics() -> Dict[str, dict]:
    return {name: breaker.get_metrics() for name, breaker in _breakers.items()}
