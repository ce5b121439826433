"""
RetryExecutor - Bounded retries with capped exponential backoff.

Delay before retry n is min(base_delay * 2^(n-1), cap_delay). A RateLimitError
carrying retry_after replaces the computed delay for the next attempt.
Only errors whose class is marked retryable are attempted again; everything
else propagates on the first failure.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from travel_planner.services.config import DependencyDescriptor
from travel_planner.services.errors import (
    OperationTimeoutError,
    RateLimitError,
    ServiceError,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for one dependency."""

    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    cap_delay: float = 10.0  # seconds

    @classmethod
    def from_descriptor(cls, descriptor: DependencyDescriptor) -> "RetryPolicy":
        return cls(
            max_retries=descriptor.max_retries,
            base_delay=descriptor.base_delay.total_seconds(),
            cap_delay=descriptor.cap_delay.total_seconds(),
        )

    def compute_delay(self, retry_number: int) -> float:
        """Backoff before the given retry (1 = first retry)."""
        return min(self.base_delay * 2 ** (retry_number - 1), self.cap_delay)


@dataclass
class RetryAttempt:
    """A failed attempt that is about to be retried."""

    attempt: int
    delay: float
    error: ServiceError


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may be retried."""
    return isinstance(error, ServiceError) and error.retryable


class RetryExecutor:
    """
    Runs one logical operation with bounded retries.

    Usage:
        executor = RetryExecutor("ai_generation", RetryPolicy(max_retries=2))
        result = await executor.execute(lambda: adapter.call(request))
    """

    def __init__(
        self,
        service_id: str,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] | None = None,
    ):
        self.service_id = service_id
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def deadline_in(self, seconds: float) -> float:
        """Absolute deadline `seconds` from now, on the executor's clock."""
        return self._now() + seconds

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        deadline: float | None = None,
        can_retry: Callable[[], bool] | None = None,
        on_retry: Callable[[RetryAttempt], None] | None = None,
    ) -> T:
        """
        Execute operation, retrying retryable failures.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt
            deadline: Absolute time (same clock as the executor) after which
                the operation is abandoned
            can_retry: Checked before each retry; returning False stops retrying
                and re-raises the last error (e.g. the breaker has opened)
            on_retry: Called with each RetryAttempt before sleeping

        Raises:
            ServiceError: The first fatal error, or the last retryable error
                once retries are exhausted
            OperationTimeoutError: If the deadline passes first
        """
        retries = 0

        while True:
            try:
                return await self._run_attempt(operation, deadline)
            except ServiceError as e:
                if not e.retryable:
                    raise

                if retries >= self.policy.max_retries:
                    logger.warning(
                        f"[{self.service_id}] giving up after {retries + 1} attempts: {e}"
                    )
                    raise

                if can_retry is not None and not can_retry():
                    logger.warning(
                        f"[{self.service_id}] not retrying, dependency unavailable: {e}"
                    )
                    raise

                retries += 1
                delay = self.policy.compute_delay(retries)
                if isinstance(e, RateLimitError) and e.retry_after is not None:
                    delay = e.retry_after

                if deadline is not None and self._now() + delay >= deadline:
                    raise OperationTimeoutError(
                        self.service_id, max(0.0, deadline - self._now())
                    ) from e

                attempt = RetryAttempt(attempt=retries + 1, delay=delay, error=e)
                logger.warning(
                    f"[{self.service_id}] attempt {retries} failed ({e.kind.value}), "
                    f"retrying in {delay:.2f}s"
                )
                if on_retry is not None:
                    on_retry(attempt)

                await self._sleep(delay)

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        deadline: float | None,
    ) -> T:
        """Run a single attempt, waiting for it no longer than the deadline."""
        if deadline is None:
            return await operation()

        remaining = deadline - self._now()
        if remaining <= 0:
            raise OperationTimeoutError(self.service_id, 0.0)

        task = asyncio.ensure_future(operation())
        try:
            # Shielded: reaching the deadline stops the wait, not the call
            return await asyncio.wait_for(asyncio.shield(task), timeout=remaining)
        except asyncio.TimeoutError:
            task.add_done_callback(self._log_abandoned)
            raise OperationTimeoutError(self.service_id, remaining) from None

    def _log_abandoned(self, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"[{self.service_id}] abandoned attempt failed late: {error}")
