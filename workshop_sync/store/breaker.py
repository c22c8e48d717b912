"""Circuit breaker for backing store calls.

Protects the session from hammering an unavailable backing store. State
is kept in pybreaker's in-memory storage: it lives as long as the session.

Configuration:
    - fail_max: consecutive failures to open the circuit
    - reset_timeout: seconds before entering half-open state
    - success_threshold: successes in half-open to close the circuit
"""

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import ParamSpec, TypeVar

import pybreaker
import structlog

from workshop_sync.core.config import settings
from workshop_sync.store.base import BackingStoreError

logger = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(BackingStoreError):
    """Raised instead of calling the backing store while the circuit is open."""

    def __init__(self, circuit_name: str):
        self.circuit_name = circuit_name
        super().__init__(f"Circuit '{circuit_name}' is open", status_code=503)


_STATE_MAP = {
    pybreaker.STATE_CLOSED: CircuitState.CLOSED,
    pybreaker.STATE_OPEN: CircuitState.OPEN,
    pybreaker.STATE_HALF_OPEN: CircuitState.HALF_OPEN,
}


class StoreCircuitBreaker:
    """Async circuit breaker around backing store requests.

    Opens after ``fail_max`` consecutive failures, enters half-open after
    ``reset_timeout`` seconds, and closes after ``success_threshold``
    successes in half-open. Only `BackingStoreError` counts as a failure.

    Usage:
        breaker = StoreCircuitBreaker("rest")
        rows = await breaker.call(client.get, url)
    """

    def __init__(
        self,
        name: str,
        fail_max: int | None = None,
        reset_timeout: float | None = None,
        success_threshold: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.fail_max = fail_max or settings.breaker_fail_max
        self.reset_timeout = (
            settings.breaker_reset_timeout if reset_timeout is None else reset_timeout
        )
        self.success_threshold = success_threshold or settings.breaker_success_threshold
        self._clock = clock
        self._storage = pybreaker.CircuitMemoryStorage(pybreaker.STATE_CLOSED)
        self._successes = 0

    @property
    def state(self) -> CircuitState:
        """Return the current circuit state."""
        return _STATE_MAP.get(self._storage.state, CircuitState.CLOSED)

    @property
    def failure_count(self) -> int:
        """Return the current consecutive failure count."""
        return self._storage.counter

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Call an async function through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is open
            BackingStoreError: Any store error from the wrapped function
        """
        if self.state == CircuitState.OPEN and not self._should_try_reset():
            logger.warning("circuit_breaker_rejected", circuit=self.name)
            raise CircuitOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except BackingStoreError:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _should_try_reset(self) -> bool:
        """Check if we should attempt a reset (transition to half-open)."""
        opened_at = self._storage.opened_at
        if opened_at is None:
            return True

        elapsed = self._clock() - opened_at
        if elapsed >= self.reset_timeout:
            self._set_state(pybreaker.STATE_HALF_OPEN)
            self._successes = 0
            logger.info(
                "circuit_breaker_half_open",
                circuit=self.name,
                elapsed_seconds=elapsed,
            )
            return True
        return False

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._set_state(pybreaker.STATE_CLOSED)
                self._storage.reset_counter()
                self._storage.opened_at = None
                logger.info(
                    "circuit_breaker_closed",
                    circuit=self.name,
                    success_count=self._successes,
                )
        else:
            self._storage.reset_counter()

    def _on_failure(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            # Failure in half-open reopens the circuit
            self._open()
            logger.warning("circuit_breaker_reopened", circuit=self.name)
            return

        self._storage.increment_counter()
        if self._storage.counter >= self.fail_max:
            self._open()
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._storage.counter,
            )

    def _open(self) -> None:
        self._set_state(pybreaker.STATE_OPEN)
        self._storage.opened_at = self._clock()

    def _set_state(self, state: str) -> None:
        self._storage.state = state

    def reset(self) -> None:
        """Reset the circuit breaker to closed state."""
        self._set_state(pybreaker.STATE_CLOSED)
        self._storage.reset_counter()
        self._storage.opened_at = None
        self._successes = 0
