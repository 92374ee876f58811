"""
Tests for AsyncCircuitBreaker.
"""

import asyncio

import pytest

from arena.core.circuit_breaker import (
    AsyncCircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    get_circuit_breaker_health,
)


async def _fail():
    raise ConnectionError("upstream down")


async def _ok():
    return "ok"


@pytest.mark.unit
class TestAsyncCircuitBreaker:
    async def test_passes_results_through(self):
        breaker = AsyncCircuitBreaker("test_passthrough")

        assert await breaker.call(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.success_count == 1

    async def test_sync_callables_are_supported(self):
        breaker = AsyncCircuitBreaker("test_sync")

        assert await breaker.call(lambda x: x * 2, 21) == 42

    async def test_opens_after_threshold_and_fails_fast(self):
        breaker = AsyncCircuitBreaker("test_trip", fail_max=2, reset_timeout=60)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(_fail)

        assert breaker.is_open
        with pytest.raises(CircuitBreakerOpen) as exc_info:
            await breaker.call(_ok)
        assert exc_info.value.breaker_name == "test_trip"
        assert exc_info.value.remaining_timeout > 0

    async def test_excluded_errors_do_not_trip(self):
        breaker = AsyncCircuitBreaker(
            "test_exclude", fail_max=1, exclude=(asyncio.TimeoutError,)
        )

        async def slow():
            raise asyncio.TimeoutError()

        with pytest.raises(asyncio.TimeoutError):
            await breaker.call(slow)
        assert breaker.state == CircuitState.CLOSED

    async def test_reset_closes(self):
        breaker = AsyncCircuitBreaker("test_reset", fail_max=1)
        with pytest.raises(ConnectionError):
            await breaker.call(_fail)
        assert breaker.is_open

        breaker.reset()

        assert await breaker.call(_ok) == "ok"

    async def test_open_registered_breaker_degrades_health(self):
        breaker = AsyncCircuitBreaker.get("test_health_probe", fail_max=1)
        with pytest.raises(ConnectionError):
            await breaker.call(_fail)

        health = get_circuit_breaker_health()

        assert health["healthy"] is False
        assert health["open_breakers"] >= 1
