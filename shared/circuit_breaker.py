"""
Circuit breaker pattern implementation for resilient backend calls.

State transitions use compare-and-set on a single state cell. The lock
guards only the swap itself and is never held across an await, so many
concurrent requests can consult and update one breaker.
"""

import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.errors import CircuitOpenError
from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Single probe in flight


STATE_GAUGE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.HALF_OPEN: 1,
    CircuitBreakerState.OPEN: 2,
}


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a single half-open probe."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 name: str = "default",
                 clock: Callable[[], float] = time.monotonic,
                 on_transition: Optional[Callable[[str, CircuitBreakerState], None]] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock
        self._on_transition = on_transition

        self._cas_lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._success_count = 0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _compare_and_set(self, expected: CircuitBreakerState, new: CircuitBreakerState) -> bool:
        """Swap state only if it still equals ``expected``."""
        with self._cas_lock:
            if self._state is not expected:
                return False
            self._state = new
            if new is CircuitBreakerState.OPEN:
                self._opened_at = self._clock()
            elif new is CircuitBreakerState.CLOSED:
                self._failure_count = 0
        self.logger.info("Circuit breaker state changed", previous=expected.value, state=new.value)
        if self._on_transition is not None:
            self._on_transition(self.name, new)
        return True

    def _cool_down_elapsed(self) -> bool:
        return (self._clock() - self._opened_at) >= self.recovery_timeout

    def try_acquire(self) -> bool:
        """Return True when a call may go through to the backend.

        After the cool-down the first caller wins the OPEN -> HALF_OPEN swap
        and becomes the probe; everyone else keeps failing fast until the
        probe settles.
        """
        state = self._state
        if state is CircuitBreakerState.CLOSED:
            return True
        if state is CircuitBreakerState.OPEN and self._cool_down_elapsed():
            return self._compare_and_set(CircuitBreakerState.OPEN, CircuitBreakerState.HALF_OPEN)
        return False

    def record_success(self) -> None:
        """Record a successful backend call."""
        self._success_count += 1
        if not self._compare_and_set(CircuitBreakerState.HALF_OPEN, CircuitBreakerState.CLOSED):
            with self._cas_lock:
                if self._state is CircuitBreakerState.CLOSED:
                    self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failure and update state."""
        self._success_count = 0
        if self._compare_and_set(CircuitBreakerState.HALF_OPEN, CircuitBreakerState.OPEN):
            self.logger.warning("Circuit breaker probe failed, reopening")
            return

        with self._cas_lock:
            if self._state is not CircuitBreakerState.CLOSED:
                return
            self._failure_count += 1
            tripped = self._failure_count >= self.failure_threshold
            failure_count = self._failure_count

        if tripped and self._compare_and_set(CircuitBreakerState.CLOSED, CircuitBreakerState.OPEN):
            self.logger.warning(
                "Circuit breaker opened due to failures",
                failure_count=failure_count,
                threshold=self.failure_threshold
            )

    def release_probe(self) -> None:
        """Abandon a half-open probe that never completed.

        The breaker returns to OPEN with the cool-down already elapsed, so
        the next caller may probe immediately.
        """
        with self._cas_lock:
            if self._state is not CircuitBreakerState.HALF_OPEN:
                return
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock() - self.recovery_timeout

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        if not self.try_acquire():
            raise CircuitOpenError(
                f"Circuit breaker '{self.name}' is open",
                {"breaker": self.name}
            )

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state is CircuitBreakerState.OPEN


class CircuitBreakerManager:
    """Manager for multiple circuit breakers, one per backend identifier."""

    def __init__(self,
                 clock: Callable[[], float] = time.monotonic,
                 on_transition: Optional[Callable[[str, CircuitBreakerState], None]] = None):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_manager")
        self._clock = clock
        self._listeners: List[Callable[[str, CircuitBreakerState], None]] = []
        if on_transition is not None:
            self._listeners.append(on_transition)
        self._lock = threading.Lock()

    def add_transition_listener(self, callback: Callable[[str, CircuitBreakerState], None]) -> None:
        """Notify ``callback`` of state changes on every breaker, existing or future."""
        self._listeners.append(callback)

    def _notify(self, name: str, state: CircuitBreakerState) -> None:
        for callback in list(self._listeners):
            callback(name, state)

    def get_circuit_breaker(self,
                            name: str,
                            failure_threshold: int = 5,
                            recovery_timeout: float = 30.0) -> CircuitBreaker:
        """Get or create a circuit breaker.

        Thresholds of an existing breaker follow the latest configuration;
        its state is kept.
        """
        with self._lock:
            breaker = self.circuit_breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    failure_threshold=failure_threshold,
                    recovery_timeout=recovery_timeout,
                    name=name,
                    clock=self._clock,
                    on_transition=self._notify,
                )
                self.circuit_breakers[name] = breaker
                self.logger.info("Created circuit breaker", name=name)
            else:
                breaker.failure_threshold = failure_threshold
                breaker.recovery_timeout = recovery_timeout
        return breaker

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }

    def open_breakers(self) -> list:
        return sorted(name for name, cb in self.circuit_breakers.items() if cb.is_open())


# Global circuit breaker manager instance
circuit_breaker_manager = CircuitBreakerManager()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get a circuit breaker from the global manager."""
    return circuit_breaker_manager.get_circuit_breaker(name, **kwargs)
