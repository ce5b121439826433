"""
ResiliencePipeline - One dependency's protected call path.

Combines, in order:
- ResponseCache: a fresh hit returns immediately, skipping everything below
- Upstream check: an unhealthy upstream skips the call and goes to the fallback
- CircuitBreaker: guards every attempt; an open breaker short-circuits
- RetryExecutor: bounded retries with backoff around breaker-guarded attempts
- Service Client Adapter: the actual call
- FallbackRegistry: degraded result once the protected call has given up
"""

from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

from loguru import logger

from travel_planner.services.cache import ResponseCache
from travel_planner.services.circuit_breaker import CircuitBreaker
from travel_planner.services.config import DependencyDescriptor
from travel_planner.services.errors import (
    ServiceError,
    UpstreamUnavailableError,
    as_service_error,
)
from travel_planner.services.fallback import (
    FallbackContext,
    FallbackRegistry,
    FallbackResult,
    OperationResult,
    Provenance,
)
from travel_planner.services.retry import RetryExecutor, RetryPolicy

if TYPE_CHECKING:
    from travel_planner.datasource.base import ServiceAdapter

RequestT = TypeVar("RequestT")
ResultT = TypeVar("ResultT")


class ResiliencePipeline(Generic[RequestT, ResultT]):
    """
    Protected call path for a single dependency.

    Usage:
        pipeline = ResiliencePipeline(descriptor, adapter, breaker, cache, fallbacks)
        result = await pipeline.execute("search_flights", request, timeout=30)
        if result.is_fallback:
            ...
    """

    def __init__(
        self,
        descriptor: DependencyDescriptor,
        adapter: "ServiceAdapter[RequestT, ResultT]",
        breaker: CircuitBreaker,
        cache: ResponseCache,
        fallbacks: FallbackRegistry,
        executor: RetryExecutor | None = None,
        upstream_check: Callable[[], list[str]] | None = None,
    ):
        if adapter.service_id != descriptor.service_id:
            raise ValueError(
                f"Adapter '{adapter.service_id}' does not match "
                f"descriptor '{descriptor.service_id}'"
            )
        self.descriptor = descriptor
        self.adapter = adapter
        self.breaker = breaker
        self.cache = cache
        self.fallbacks = fallbacks
        self.executor = executor or RetryExecutor(
            descriptor.service_id, RetryPolicy.from_descriptor(descriptor)
        )
        # Returns the unhealthy upstreams; a non-empty list skips the call
        self.upstream_check = upstream_check

    @property
    def service_id(self) -> str:
        return self.descriptor.service_id

    async def execute(
        self,
        operation: str,
        request: RequestT,
        timeout: float | None = None,
        use_cache: bool = True,
    ) -> OperationResult[ResultT]:
        """
        Run the full pipeline for one logical operation.

        Returns:
            OperationResult (primary or cached) or FallbackResult

        Raises:
            ValidationError: Caller fault, never handed to the fallback
            OperationTimeoutError: Deadline reached
            UpstreamUnavailableError: An upstream is unhealthy and no fallback is registered
            ServiceError: Any other failure when no fallback is registered
        """
        key = self.cache.fingerprint(operation, request) if use_cache else None

        if key is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return OperationResult(
                    data=cached.data,
                    operation=operation,
                    service_id=self.service_id,
                    provenance=Provenance.CACHE,
                    generated_at=cached.inserted_at,
                )

        blocked = self.upstream_check() if self.upstream_check else []
        if blocked:
            error = UpstreamUnavailableError(self.service_id, blocked)
            logger.warning(f"[{self.service_id}] {operation} skipped: {error}")
            return await self._fallback(operation, request, key, error)

        deadline = self.executor.deadline_in(timeout) if timeout is not None else None

        try:
            data = await self.executor.execute(
                lambda: self.breaker.call(lambda: self._call_adapter(request)),
                deadline=deadline,
                can_retry=self.breaker.can_request,
            )
        except ServiceError as e:
            if not e.fallback_eligible:
                raise
            return await self._fallback(operation, request, key, e)

        if key is not None:
            await self.cache.set(key, data, self.descriptor.cache_ttl)

        return OperationResult(data=data, operation=operation, service_id=self.service_id)

    async def _call_adapter(self, request: RequestT) -> ResultT:
        try:
            return await self.adapter.call(request)
        except ServiceError:
            raise
        except Exception as e:
            raise as_service_error(e, self.service_id) from e

    async def _fallback(
        self,
        operation: str,
        request: RequestT,
        key: str | None,
        error: ServiceError,
    ) -> FallbackResult[Any]:
        if not self.fallbacks.has(operation):
            logger.error(f"[{self.service_id}] {operation} failed with no fallback: {error}")
            raise error

        stale = await self.cache.get_stale(key) if key is not None else None
        return await self.fallbacks.invoke(
            FallbackContext(
                operation=operation,
                service_id=self.service_id,
                request=request,
                error=error,
                stale=stale,
            )
        )
