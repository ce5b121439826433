"""
CircuitBreaker - Stops calling a failing dependency for a cooldown period.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests are blocked
- HALF_OPEN: Exactly one trial request is allowed through

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: Once the cooldown has elapsed
- HALF_OPEN → CLOSED: On a successful trial request
- HALF_OPEN → OPEN: On a failed trial request (cooldown restarts)
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar

from loguru import logger

from travel_planner.services.config import DependencyDescriptor
from travel_planner.services.errors import BreakerOpenError, ServiceError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    reset_timeout: timedelta = timedelta(seconds=30)  # Time before half-open

    @classmethod
    def from_descriptor(cls, descriptor: DependencyDescriptor) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=descriptor.failure_threshold,
            reset_timeout=descriptor.cooldown,
        )


class BreakerListener(Protocol):
    """Observer notified of breaker state and failure count changes."""

    def breaker_state_changed(
        self,
        service_id: str,
        old_state: CircuitState,
        new_state: CircuitState,
        failure_count: int,
    ) -> None: ...

    def breaker_failures_changed(self, service_id: str, failure_count: int) -> None: ...


@dataclass(frozen=True)
class _Permit:
    generation: int
    trial: bool


def _counts_as_failure(error: BaseException) -> bool:
    if isinstance(error, ServiceError):
        return error.counts_as_failure
    return isinstance(error, Exception)


class CircuitBreaker:
    """
    Circuit breaker implementation for a single service.

    One instance is shared by every concurrent caller of the dependency.
    Permit checks and outcome recording happen under an asyncio.Lock; the
    guarded operation itself runs outside the lock.

    Usage:
        cb = CircuitBreaker("flight_search")
        result = await cb.call(lambda: adapter.call(request))
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        listeners: Iterable[BreakerListener] = (),
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._listeners: list[BreakerListener] = list(listeners)

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._next_attempt_at: datetime | None = None
        self._half_open_in_flight = False
        self._generation = 0
        self._lock = asyncio.Lock()

    def add_listener(self, listener: BreakerListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN:
            if self._next_attempt_at and self._clock() >= self._next_attempt_at:
                self._transition(CircuitState.HALF_OPEN)
                self._half_open_in_flight = False
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def can_request(self) -> bool:
        """Check if a request would currently be allowed."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.HALF_OPEN:
            return not self._half_open_in_flight

        return False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation if the breaker allows it and record the outcome.

        The outcome is settled against the state the call was admitted
        under: only the half-open trial can close or reopen the breaker,
        and a call admitted while CLOSED only feeds the CLOSED failure count.

        Raises:
            BreakerOpenError: If the breaker is open, or a half-open trial
                is already in flight. The operation is not invoked.
        """
        async with self._lock:
            permit = self._acquire()

        try:
            result = await operation()
        except BaseException as e:
            async with self._lock:
                self._settle(permit, succeeded=False, counted=_counts_as_failure(e))
            raise

        async with self._lock:
            self._settle(permit, succeeded=True, counted=False)
        return result

    def _acquire(self) -> _Permit:
        """Take a permit stamped with the current breaker generation."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return _Permit(self._generation, trial=False)

        if current_state == CircuitState.HALF_OPEN and not self._half_open_in_flight:
            self._half_open_in_flight = True
            logger.info(f"Circuit breaker '{self.service_id}' allowing trial request")
            return _Permit(self._generation, trial=True)

        raise BreakerOpenError(self.service_id, self.get_time_until_reset() or 0)

    def _settle(self, permit: _Permit, succeeded: bool, counted: bool) -> None:
        if permit.trial:
            if self._state != CircuitState.HALF_OPEN or permit.generation != self._generation:
                # Breaker was reset while the trial ran
                logger.debug(f"Circuit breaker '{self.service_id}' ignoring outdated trial")
                return
            if succeeded:
                self.record_success()
            elif counted:
                self.record_failure()
            else:
                # Neutral outcome, let the next caller run the trial
                self._half_open_in_flight = False
            return

        if self._state != CircuitState.CLOSED:
            # Admitted before the breaker opened; the trial owns the recovery
            if counted:
                self._last_failure_time = self._clock()
            return

        if succeeded:
            self.record_success()
        elif counted:
            self.record_failure()

    def record_success(self) -> None:
        """Record a successful request."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED and self._failure_count:
            # Reset failure count on success
            self._failure_count = 0
            self._notify_failures()

    def record_failure(self) -> None:
        """Record a failed request."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._open()
            else:
                self._notify_failures()

    def _open(self) -> None:
        """Transition to OPEN state."""
        now = self._clock()
        self._opened_at = now
        self._next_attempt_at = now + self.config.reset_timeout
        self._half_open_in_flight = False
        self._generation += 1
        self._transition(CircuitState.OPEN)
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._failure_count = 0
        self._opened_at = None
        self._next_attempt_at = None
        self._half_open_in_flight = False
        self._generation += 1
        self._transition(CircuitState.CLOSED)
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state == CircuitState.OPEN and new_state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")
        for listener in self._listeners:
            try:
                listener.breaker_state_changed(
                    self.service_id, old_state, new_state, self._failure_count
                )
            except Exception as e:
                logger.error(f"Breaker listener failed for '{self.service_id}': {e}")

    def _notify_failures(self) -> None:
        for listener in self._listeners:
            try:
                listener.breaker_failures_changed(self.service_id, self._failure_count)
            except Exception as e:
                logger.error(f"Breaker listener failed for '{self.service_id}': {e}")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._last_failure_time = None
        if self._state != CircuitState.CLOSED:
            self._close()
        elif self._failure_count:
            self._failure_count = 0
            self._notify_failures()
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._next_attempt_at:
            return None

        remaining = (self._next_attempt_at - self._clock()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.config.failure_threshold,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }


class CircuitBreakerRegistry:
    """
    Holds exactly one circuit breaker per dependency for the process lifetime.

    Usage:
        registry = CircuitBreakerRegistry.from_descriptors(descriptors)
        cb = registry.get("flight_search")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        listeners: Iterable[BreakerListener] = (),
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._listeners = list(listeners)

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[DependencyDescriptor],
        clock: Callable[[], datetime] = datetime.now,
        listeners: Iterable[BreakerListener] = (),
    ) -> "CircuitBreakerRegistry":
        registry = cls(clock=clock, listeners=listeners)
        for descriptor in descriptors:
            registry.get(
                descriptor.service_id, CircuitBreakerConfig.from_descriptor(descriptor)
            )
        return registry

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                config or self._default_config,
                clock=self._clock,
                listeners=self._listeners,
            )
        return self._breakers[service_id]

    def add_listener(self, listener: BreakerListener) -> None:
        """Attach a listener to every existing and future breaker."""
        self._listeners.append(listener)
        for cb in self._breakers.values():
            cb.add_listener(listener)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> list[str]:
        """Force every breaker closed. Returns the dependencies that were tripped."""
        tripped = [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.state != CircuitState.CLOSED
        ]
        for cb in self._breakers.values():
            cb.reset()
        if tripped:
            logger.warning(f"Force-closed circuit breakers: {', '.join(tripped)}")
        return tripped

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
