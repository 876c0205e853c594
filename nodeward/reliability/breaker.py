"""Circuit breaker guarding a shared downstream dependency.

One breaker wraps one provider client, not an operation type: every pool
and every call site using that client shares its fate. Transitions are
plain counter/timestamp mutations under a lock that is never held across
an ``await``.

States:
    CLOSED     calls flow; consecutive failures are counted.
    OPEN       calls are rejected with CircuitOpenError until the reset
               timeout has elapsed since the last failure.
    HALF_OPEN  the next call is a probe; success closes, failure re-opens.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from .errors import CircuitOpenError
from .retry import RetryConfig, execute

type Clock = Callable[[], float]


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Breaker thresholds.

    Attributes:
        max_failures: Consecutive failures that open the circuit.
        reset_timeout: Seconds the circuit stays open before a probe.
    """

    max_failures: int = 5
    reset_timeout: float = 60.0


class CircuitBreaker:
    """Closed/Open/HalfOpen gate in front of a single dependency."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        name: str = "",
        clock: Clock = time.monotonic,
    ) -> None:
        cfg = config or CircuitBreakerConfig()
        self._max_failures = cfg.max_failures
        self._reset_timeout = cfg.reset_timeout
        self._name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure: float | None = None
        self._probing = False
        self._log = logger.bind(component="breaker", provider=name or "-")

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._probing = False

    def _admit(self) -> bool:
        """Decide whether a call may run; returns True when it is the half-open probe."""
        with self._lock:
            match self._state:
                case CircuitState.CLOSED:
                    return False
                case CircuitState.OPEN:
                    assert self._last_failure is not None
                    if self._clock() - self._last_failure > self._reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._failures = 0
                        self._probing = True
                        self._log.info("Circuit half-open, probing")
                        return True
                    raise CircuitOpenError(self._name)
                case CircuitState.HALF_OPEN:
                    if self._probing:
                        raise CircuitOpenError(self._name)
                    self._probing = True
                    return True

    def _on_failure(self, probe: bool) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            if probe:
                self._probing = False
            if self._state is CircuitState.HALF_OPEN or self._failures >= self._max_failures:
                if self._state is not CircuitState.OPEN:
                    self._log.warning(
                        "Circuit opened after {n} consecutive failures", n=self._failures,
                    )
                self._state = CircuitState.OPEN

    def _on_success(self, probe: bool) -> None:
        with self._lock:
            if probe:
                self._probing = False
            if self._state is CircuitState.HALF_OPEN:
                self._log.info("Probe succeeded, circuit closed")
                self._state = CircuitState.CLOSED
            self._failures = 0

    async def call[T](self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: The circuit is open; ``operation`` was not invoked.
        """
        probe = self._admit()
        try:
            result = await operation()
        except Exception:
            self._on_failure(probe)
            raise
        except BaseException:
            # Cancellation says nothing about the dependency's health.
            if probe:
                with self._lock:
                    self._probing = False
            raise
        self._on_success(probe)
        return result


async def retry_with_breaker[T](
    config: RetryConfig,
    breaker: CircuitBreaker,
    operation: Callable[[], Awaitable[T]],
    **kwargs,
) -> T:
    """Retry ``operation`` with every attempt re-entering ``breaker``.

    Once the breaker opens mid-loop, the remaining attempts fail fast but
    still count against ``max_retries``.
    """
    return await execute(config, lambda: breaker.call(operation), **kwargs)
