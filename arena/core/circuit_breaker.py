"""
Circuit breakers for the engine's external boundaries.

Each external system (exchange REST, market data, AI inference, chain RPC)
gets its own named breaker so that one failing dependency fails fast without
dragging the others down. A tripped breaker surfaces as CircuitBreakerOpen,
which the sweeps treat as a transient error for the current cycle.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is down, requests fail fast
- HALF_OPEN: Testing if service has recovered
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Optional

import pybreaker

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker state"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open."""

    def __init__(self, breaker_name: str, remaining_timeout: float = 0):
        self.breaker_name = breaker_name
        self.remaining_timeout = remaining_timeout
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry after {remaining_timeout:.1f}s"
        )


@dataclass
class CircuitBreakerStats:
    """Statistics for a circuit breaker."""
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_calls: int
    opened_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Logs state transitions of a breaker."""

    def __init__(self, name: str):
        self.name = name
        self.opened_at: Optional[datetime] = None
        self.opened_monotonic: Optional[float] = None

    def state_change(self, cb, old_state, new_state) -> None:
        old_name = getattr(old_state, "name", str(old_state))
        new_name = getattr(new_state, "name", str(new_state))

        if new_name == "open":
            self.opened_at = datetime.now(UTC)
            self.opened_monotonic = time.monotonic()
            logger.error(
                f"Circuit breaker '{self.name}' OPENED - "
                f"failures={cb.fail_counter}, threshold={cb.fail_max}"
            )
        elif new_name == "closed" and old_name != "closed":
            logger.info(f"Circuit breaker '{self.name}' CLOSED - service recovered")
            self.opened_at = None
            self.opened_monotonic = None
        else:
            logger.warning(
                f"Circuit breaker '{self.name}' state changed: {old_name} -> {new_name}"
            )

    def failure(self, cb, exc: BaseException) -> None:
        logger.debug(
            f"Circuit breaker '{self.name}' recorded failure: {type(exc).__name__}"
        )


class AsyncCircuitBreaker:
    """
    Async-friendly wrapper around pybreaker's CircuitBreaker.

    pybreaker only keeps the state machine here; the awaited call runs
    outside of it and its outcome is replayed into the breaker.
    """

    DEFAULT_FAIL_MAX = 5
    DEFAULT_RESET_TIMEOUT = 30

    _breakers: dict[str, "AsyncCircuitBreaker"] = {}

    def __init__(
        self,
        name: str,
        fail_max: int = DEFAULT_FAIL_MAX,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        exclude: tuple[type[Exception], ...] = (),
    ):
        self.name = name
        self.listener = CircuitBreakerListener(name)
        self._breaker = pybreaker.CircuitBreaker(
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            exclude=list(exclude),
            listeners=[self.listener],
            name=name,
        )
        self._total_calls = 0
        self._success_count = 0

    @property
    def state(self) -> CircuitState:
        state = self._breaker.current_state
        state_name = getattr(state, "name", str(state))
        if state_name == "closed":
            return CircuitState.CLOSED
        if state_name == "open":
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self.state,
            failure_count=self._breaker.fail_counter,
            success_count=self._success_count,
            total_calls=self._total_calls,
            opened_at=self.listener.opened_at,
        )

    def _remaining_timeout(self) -> float:
        opened = self.listener.opened_monotonic
        if opened is None:
            return float(self._breaker.reset_timeout)
        return max(0.0, self._breaker.reset_timeout - (time.monotonic() - opened))

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a function with circuit breaker protection.

        Raises:
            CircuitBreakerOpen: If circuit is open and the reset timeout has not elapsed
            Exception: Whatever the wrapped call raises
        """
        self._total_calls += 1

        if self.is_open and self._remaining_timeout() > 0:
            raise CircuitBreakerOpen(self.name, self._remaining_timeout())

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._record_failure(e)
            raise

        self._success_count += 1
        self._record_success()
        return result

    def _record_success(self) -> None:
        try:
            self._breaker.call(lambda: None)
        except pybreaker.CircuitBreakerError:
            return

    def _record_failure(self, exc: Exception) -> None:
        def replay():
            raise exc

        # pybreaker counts the failure, then re-raises it (or CircuitBreakerError on trip)
        try:
            self._breaker.call(replay)
        except (pybreaker.CircuitBreakerError, type(exc)):
            return

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        self._breaker.close()
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    @classmethod
    def get(
        cls,
        name: str,
        fail_max: int = DEFAULT_FAIL_MAX,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        exclude: tuple[type[Exception], ...] = (),
    ) -> "AsyncCircuitBreaker":
        """Get or create a circuit breaker by name."""
        if name not in cls._breakers:
            cls._breakers[name] = cls(name, fail_max, reset_timeout, exclude)
        return cls._breakers[name]

    @classmethod
    def get_all_stats(cls) -> list[CircuitBreakerStats]:
        return [breaker.stats for breaker in cls._breakers.values()]

    @classmethod
    def reset_all(cls) -> None:
        for breaker in cls._breakers.values():
            breaker.reset()


# ==================== Predefined Circuit Breakers ====================


def get_ai_circuit_breaker() -> AsyncCircuitBreaker:
    """AI inference is slow; timeouts don't trip the breaker."""
    return AsyncCircuitBreaker.get(
        name="ai_api",
        fail_max=5,
        reset_timeout=60,
        exclude=(asyncio.TimeoutError,),
    )


def get_exchange_circuit_breaker(exchange: str) -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker.get(
        name=f"exchange_{exchange}",
        fail_max=3,
        reset_timeout=30,
    )


def get_market_data_circuit_breaker() -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker.get(
        name="market_data",
        fail_max=5,
        reset_timeout=15,
    )


def get_chain_circuit_breaker(chain: str) -> AsyncCircuitBreaker:
    """Public RPC endpoints flap; give them a longer recovery window."""
    return AsyncCircuitBreaker.get(
        name=f"chain_{chain}",
        fail_max=5,
        reset_timeout=60,
    )


def get_circuit_breaker_health() -> dict:
    all_stats = AsyncCircuitBreaker.get_all_stats()
    open_breakers = [s for s in all_stats if s.state == CircuitState.OPEN]
    return {
        "healthy": len(open_breakers) == 0,
        "total_breakers": len(all_stats),
        "open_breakers": len(open_breakers),
        "breakers": [s.to_dict() for s in all_stats],
    }
