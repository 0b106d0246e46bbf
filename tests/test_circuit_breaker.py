"""Tests for CircuitBreaker and CircuitBreakerRegistry."""

import asyncio
from datetime import timedelta

import pytest

from similar_products.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from similar_products.services.errors import CircuitOpenError


def _config(**overrides) -> CircuitBreakerConfig:
    values = dict(
        failure_rate_threshold=50.0,
        wait_duration_in_open_state=timedelta(seconds=10),
        sliding_window_size=10,
        minimum_number_of_calls=4,
        slow_call_rate_threshold=100.0,
        slow_call_duration_threshold=timedelta(seconds=1),
        permitted_calls_in_half_open=1,
    )
    values.update(overrides)
    return CircuitBreakerConfig(**values)


class Supplier:
    """Async callable counting invocations, failing on demand."""

    def __init__(self):
        self.calls = 0
        self.fail = False

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("upstream down")
        return "ok"


async def _fail(cb: CircuitBreaker, supplier: Supplier, times: int) -> None:
    supplier.fail = True
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await cb.call(supplier)
    supplier.fail = False


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker("product-service", _config(), clock=clock)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_opens_at_failure_rate_after_minimum_calls(self, breaker):
        supplier = Supplier()
        await breaker.call(supplier)
        await breaker.call(supplier)
        await _fail(breaker, supplier, 1)
        assert breaker.state == CircuitState.CLOSED

        await _fail(breaker, supplier, 1)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(supplier)
        assert supplier.calls == 4
        assert exc_info.value.service_id == "product-service"
        assert exc_info.value.reset_after_seconds == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_stays_closed_below_minimum_calls(self, breaker):
        supplier = Supplier()
        await _fail(breaker, supplier, 3)

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(supplier) == "ok"

    @pytest.mark.asyncio
    async def test_stays_closed_below_failure_rate(self, breaker):
        supplier = Supplier()
        for _ in range(3):
            await breaker.call(supplier)
        await _fail(breaker, supplier, 1)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, breaker, clock):
        supplier = Supplier()
        await _fail(breaker, supplier, 4)
        assert breaker.state == CircuitState.OPEN

        clock.advance(9)
        assert breaker.state == CircuitState.OPEN

        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

        assert await breaker.call(supplier) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert supplier.calls == 5

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        supplier = Supplier()
        await _fail(breaker, supplier, 4)
        clock.advance(10)

        await _fail(breaker, supplier, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.get_time_until_reset() == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_closed_window_restarts_after_recovery(self, breaker, clock):
        supplier = Supplier()
        await _fail(breaker, supplier, 4)
        clock.advance(10)
        await breaker.call(supplier)

        # Old failures are gone: three new failures stay under the minimum
        await _fail(breaker, supplier, 3)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_window_only_keeps_latest_calls(self, clock):
        cb = CircuitBreaker(
            "svc", _config(sliding_window_size=4, minimum_number_of_calls=4), clock=clock
        )
        supplier = Supplier()
        await _fail(cb, supplier, 1)
        for _ in range(3):
            await cb.call(supplier)
        assert cb.state == CircuitState.CLOSED

        # The first failure slides out of the window
        await cb.call(supplier)
        await _fail(cb, supplier, 1)
        assert cb.state == CircuitState.CLOSED
        assert cb.get_status()["failed_calls"] == 1


class TestHalfOpenPermits:
    @pytest.mark.asyncio
    async def test_extra_trial_calls_are_rejected(self, breaker, clock):
        supplier = Supplier()
        await _fail(breaker, supplier, 4)
        clock.advance(10)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "recovered"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)

        assert not breaker.can_request()
        with pytest.raises(CircuitOpenError):
            await breaker.call(supplier)

        release.set()
        assert await trial == "recovered"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["not_permitted_calls"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_permit(self, breaker, clock):
        supplier = Supplier()
        await _fail(breaker, supplier, 4)
        clock.advance(10)

        async def hang():
            await asyncio.sleep(10)

        trial = asyncio.create_task(breaker.call(hang))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(supplier) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_multiple_trials_evaluated_together(self, clock):
        cb = CircuitBreaker("svc", _config(permitted_calls_in_half_open=2), clock=clock)
        supplier = Supplier()
        await _fail(cb, supplier, 4)
        clock.advance(10)

        await cb.call(supplier)
        assert cb.state == CircuitState.HALF_OPEN

        await _fail(cb, supplier, 1)
        assert cb.state == CircuitState.OPEN


class TestSlowCalls:
    @pytest.mark.asyncio
    async def test_slow_successes_open_the_circuit(self, clock):
        cb = CircuitBreaker("svc", _config(slow_call_rate_threshold=50.0), clock=clock)

        async def slow():
            clock.advance(1.5)
            return "late"

        for _ in range(4):
            assert await cb.call(slow) == "late"

        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_fast_calls_are_not_slow(self, clock):
        cb = CircuitBreaker("svc", _config(slow_call_rate_threshold=50.0), clock=clock)

        async def quick():
            clock.advance(0.5)
            return "fast"

        for _ in range(4):
            await cb.call(quick)

        assert cb.state == CircuitState.CLOSED
        assert cb.get_status()["slow_calls"] == 0


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_and_reset(self, breaker):
        supplier = Supplier()
        await breaker.call(supplier)
        await _fail(breaker, supplier, 1)

        status = breaker.get_status()
        assert status["state"] == "CLOSED"
        assert status["buffered_calls"] == 2
        assert status["failure_rate"] == 50.0
        assert status["last_failure"] is not None
        assert status["time_until_reset"] is None

        await _fail(breaker, supplier, 2)
        assert breaker.state == CircuitState.OPEN

        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["buffered_calls"] == 0


class TestRegistry:
    def test_same_name_same_instance(self, clock):
        registry = CircuitBreakerRegistry(_config(), clock=clock)

        first = registry.get("product-service")
        second = registry.get("product-service")

        assert first is second
        assert registry.find("other") is None

    @pytest.mark.asyncio
    async def test_open_circuits_and_reset(self, clock):
        registry = CircuitBreakerRegistry(_config(), clock=clock)
        failing = registry.get("failing")
        registry.get("healthy")

        await _fail(failing, Supplier(), 4)

        assert registry.get_open_circuits() == ["failing"]
        assert set(registry.get_all_status()) == {"failing", "healthy"}

        assert registry.reset("failing") is True
        assert registry.reset("unknown") is False
        assert registry.get_open_circuits() == []

    @pytest.mark.asyncio
    async def test_reset_all(self, clock):
        registry = CircuitBreakerRegistry(_config(), clock=clock)
        supplier = Supplier()
        for name in ("catalog", "pricing"):
            await _fail(registry.get(name), supplier, 4)

        assert sorted(registry.get_open_circuits()) == ["catalog", "pricing"]

        registry.reset_all()

        assert registry.get_open_circuits() == []
        assert all(
            status["state"] == CircuitState.CLOSED.value
            for status in registry.get_all_status().values()
        )
        assert await registry.get("catalog").call(supplier) == "ok"
