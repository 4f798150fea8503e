# backend/governor/utils/circuit_breaker.py
"""
Circuit breaker for provider calls (synthesis, judge, embeddings).

When a provider keeps failing the circuit opens and battles fail fast with a
ProviderError instead of burning budget on requests that will not succeed.
After `timeout` seconds one trial call is let through (HALF_OPEN); enough
successes close the circuit again.

States:
- CLOSED: calls go through
- OPEN: calls fail immediately
- HALF_OPEN: limited trial calls allowed
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from governor.errors import ProviderError
from governor.utils.logger import logger


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerStats:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    last_state_change: float = field(default_factory=time.time)
    total_calls: int = 0
    total_failures: int = 0
    half_open_calls: int = 0


class CircuitBreakerError(ProviderError):
    """Raised when the circuit is open; counts as a provider failure."""
    pass


class CircuitBreaker:
    """
    Example:
        judge_breaker = get_breaker("openai_judge")
        scores = await judge_breaker.call(client.judge, transcript)
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        half_open_max_calls: int = 1,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self.stats.state

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        async with self._lock:
            if self.stats.state == CircuitState.OPEN:
                if self._time_until_half_open() > 0:
                    raise CircuitBreakerError(
                        f"Circuit '{self.name}' is OPEN; retry in {self._time_until_half_open():.0f}s"
                    )
                self._transition(CircuitState.HALF_OPEN)

            if self.stats.state == CircuitState.HALF_OPEN:
                if self.stats.half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerError(f"Circuit '{self.name}' is HALF_OPEN; trial call already in flight")
                self.stats.half_open_calls += 1

            self.stats.total_calls += 1

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self._on_failure(e)
            raise
        else:
            await self._on_success()
            return result
        finally:
            async with self._lock:
                if self.stats.half_open_calls > 0:
                    self.stats.half_open_calls -= 1

    async def _on_success(self) -> None:
        async with self._lock:
            if self.stats.state == CircuitState.HALF_OPEN:
                self.stats.success_count += 1
                if self.stats.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self.stats.failure_count = 0

    async def _on_failure(self, exc: Exception) -> None:
        async with self._lock:
            self.stats.total_failures += 1
            self.stats.failure_count += 1
            self.stats.last_failure_time = time.time()
            logger.warning(f"[CircuitBreaker:{self.name}] failure in {self.stats.state.value}: {exc}")

            if self.stats.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self.stats.failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def _time_until_half_open(self) -> float:
        if self.stats.last_failure_time is None:
            return 0.0
        return max(0.0, self.timeout - (time.time() - self.stats.last_failure_time))

    def _transition(self, new_state: CircuitState) -> None:
        log = logger.error if new_state == CircuitState.OPEN else logger.info
        log(f"[CircuitBreaker:{self.name}] {self.stats.state.value} -> {new_state.value}")
        self.stats.state = new_state
        self.stats.failure_count = 0
        self.stats.success_count = 0
        self.stats.last_state_change = time.time()

    def reset(self) -> None:
        self.stats = CircuitBreakerStats()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.stats.state.value,
            "failure_count": self.stats.failure_count,
            "total_calls": self.stats.total_calls,
            "total_failures": self.stats.total_failures,
        }


_breakers: Dict[str, CircuitBreaker] = {}


def get_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create the shared breaker for a provider."""
    if name not in _breakers:
        _breakers[name] = CircuitBreaker(name=name, **kwargs)
    return _breakers[name]


def get_all_breaker_stats() -> Dict[str, Dict[str, Any]]:
    return {name: b.get_stats() for name, b in _breakers.items()}
