"""
CircuitBreaker - Stops calling an upstream service while it is failing.

States:
- CLOSED: Normal operation, calls pass through and are recorded
- OPEN: Service is failing, calls are rejected without being attempted
- HALF_OPEN: A limited number of trial calls test whether the service recovered

Transitions:
- CLOSED → OPEN: When the sliding window holds enough calls and the failure
  rate or the slow-call rate reaches its threshold
- OPEN → HALF_OPEN: After wait_duration_in_open_state expires
- HALF_OPEN → CLOSED: When the trial calls stay under both thresholds
- HALF_OPEN → OPEN: When the trial calls reach either threshold
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from loguru import logger

from similar_products.services.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker. Rate thresholds are percentages."""

    failure_rate_threshold: float = 50.0
    wait_duration_in_open_state: timedelta = timedelta(seconds=10)
    sliding_window_size: int = 100  # Most recent calls considered
    minimum_number_of_calls: int = 20  # Calls needed before rates are evaluated
    slow_call_rate_threshold: float = 50.0
    slow_call_duration_threshold: timedelta = timedelta(seconds=5)
    permitted_calls_in_half_open: int = 1


@dataclass(frozen=True)
class CallOutcome:
    """Outcome of one guarded call."""

    failed: bool
    slow: bool


class CircuitBreaker:
    """
    Count-based sliding window circuit breaker for a single service.

    Usage:
        cb = CircuitBreaker("product_service")

        try:
            detail = await cb.call(lambda: http_get("/product/1"))
        except CircuitOpenError:
            ...  # not attempted, service considered down

    State is guarded by a lock that is never held across an await, so one
    instance may be shared by every caller of the service.
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: deque[CallOutcome] = deque(maxlen=self.config.sliding_window_size)
        self._half_open_outcomes: list[CallOutcome] = []
        self._half_open_permits = 0
        self._opened_at: float | None = None
        self._last_failure_time: datetime | None = None
        self._not_permitted_calls = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        with self._lock:
            self._check_open_timeout()
            return self._state

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run fn through the breaker.

        Args:
            fn: Async function performing the guarded call

        Returns:
            Whatever fn returns

        Raises:
            CircuitOpenError: If the circuit does not permit the call; fn is not invoked
            Exception: Whatever fn raised, after it was recorded as a failure
        """
        if not self.try_acquire_permission():
            raise CircuitOpenError(self.service_id, self.get_time_until_reset() or 0)

        started = self._clock()
        try:
            result = await fn()
        except asyncio.CancelledError:
            self.release_permission()
            raise
        except Exception:
            self.record_failure(self._clock() - started)
            raise

        self.record_success(self._clock() - started)
        return result

    def can_request(self) -> bool:
        """Check if a request would be allowed, without reserving a trial slot."""
        with self._lock:
            self._check_open_timeout()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                return self._half_open_permits < self.config.permitted_calls_in_half_open
            return False

    def try_acquire_permission(self) -> bool:
        """Reserve the right to make one call. HALF_OPEN hands out a limited number."""
        with self._lock:
            self._check_open_timeout()

            if self._state == CircuitState.CLOSED:
                return True

            if (
                self._state == CircuitState.HALF_OPEN
                and self._half_open_permits < self.config.permitted_calls_in_half_open
            ):
                self._half_open_permits += 1
                return True

            self._not_permitted_calls += 1
            return False

    def release_permission(self) -> None:
        """Give back a permission for a call that ended without an outcome."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_permits > 0:
                self._half_open_permits -= 1

    def record_success(self, duration: float = 0.0) -> None:
        """Record a successful call that took duration seconds."""
        self._record(CallOutcome(failed=False, slow=self._is_slow(duration)))

    def record_failure(self, duration: float = 0.0) -> None:
        """Record a failed call that took duration seconds."""
        self._last_failure_time = datetime.now()
        self._record(CallOutcome(failed=True, slow=self._is_slow(duration)))

    def _is_slow(self, duration: float) -> bool:
        return duration >= self.config.slow_call_duration_threshold.total_seconds()

    def _record(self, outcome: CallOutcome) -> None:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._window.append(outcome)
                minimum = min(
                    self.config.minimum_number_of_calls,
                    self.config.sliding_window_size,
                )
                if self._exceeds_thresholds(self._window, minimum):
                    self._open()

            elif self._state == CircuitState.HALF_OPEN:
                self._half_open_outcomes.append(outcome)
                permitted = self.config.permitted_calls_in_half_open
                if len(self._half_open_outcomes) >= permitted:
                    if self._exceeds_thresholds(self._half_open_outcomes, permitted):
                        self._open()
                    else:
                        self._close()

            # OPEN: late results of calls admitted before opening are ignored

    def _exceeds_thresholds(self, outcomes: Iterable[CallOutcome], minimum: int) -> bool:
        outcomes = list(outcomes)
        if not outcomes or len(outcomes) < minimum:
            return False

        failure_rate = _rate(outcomes, lambda o: o.failed)
        slow_rate = _rate(outcomes, lambda o: o.slow)
        return (
            failure_rate >= self.config.failure_rate_threshold
            or slow_rate >= self.config.slow_call_rate_threshold
        )

    def _check_open_timeout(self) -> None:
        """Move OPEN → HALF_OPEN once the wait duration elapsed. Caller holds the lock."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return

        wait = self.config.wait_duration_in_open_state.total_seconds()
        if self._clock() >= self._opened_at + wait:
            self._state = CircuitState.HALF_OPEN
            self._half_open_permits = 0
            self._half_open_outcomes = []
            logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")

    def _open(self) -> None:
        """Transition to OPEN state."""
        previous = self._state
        rates = self._describe_rates()
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_permits = 0
        self._half_open_outcomes = []
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED from {previous.value} ({rates})"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._window.clear()
        self._opened_at = None
        self._half_open_permits = 0
        self._half_open_outcomes = []
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._window.clear()
            self._opened_at = None
            self._half_open_permits = 0
            self._half_open_outcomes = []
            self._last_failure_time = None
            self._not_permitted_calls = 0
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def _describe_rates(self) -> str:
        outcomes = (
            self._half_open_outcomes
            if self._state == CircuitState.HALF_OPEN
            else list(self._window)
        )
        failure_rate = _rate(outcomes, lambda o: o.failed)
        slow_rate = _rate(outcomes, lambda o: o.slow)
        return (
            f"{len(outcomes)} calls, failure rate {failure_rate:.1f}%, "
            f"slow call rate {slow_rate:.1f}%"
        )

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None

        wait = self.config.wait_duration_in_open_state.total_seconds()
        remaining = self._opened_at + wait - self._clock()
        return max(0.0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        state = self.state
        with self._lock:
            outcomes = list(self._window)
        return {
            "service_id": self.service_id,
            "state": state.value,
            "buffered_calls": len(outcomes),
            "failed_calls": sum(1 for o in outcomes if o.failed),
            "slow_calls": sum(1 for o in outcomes if o.slow),
            "failure_rate": _rate(outcomes, lambda o: o.failed),
            "slow_call_rate": _rate(outcomes, lambda o: o.slow),
            "not_permitted_calls": self._not_permitted_calls,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "time_until_reset": self.get_time_until_reset(),
        }


def _rate(outcomes: list[CallOutcome], predicate: Callable[[CallOutcome], bool]) -> float:
    """Percentage of outcomes matching predicate."""
    if not outcomes:
        return 0.0
    return sum(1 for o in outcomes if predicate(o)) * 100.0 / len(outcomes)


class CircuitBreakerRegistry:
    """
    Registry holding one named circuit breaker per upstream service.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("product_service")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create the circuit breaker for a service."""
        with self._lock:
            if service_id not in self._breakers:
                self._breakers[service_id] = CircuitBreaker(
                    service_id,
                    config or self._default_config,
                    clock=self._clock,
                )
            return self._breakers[service_id]

    def find(self, service_id: str) -> CircuitBreaker | None:
        """Get an existing circuit breaker without creating one."""
        return self._breakers.get(service_id)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, service_id: str) -> bool:
        """Reset a specific circuit breaker."""
        if service_id in self._breakers:
            self._breakers[service_id].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of services with open circuits."""
        return [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
