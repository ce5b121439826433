"""
TravelOrchestrator - End-to-end travel operations over the resilience core.

Each dependency gets its own ResiliencePipeline. A trip plan fans out to
several pipelines concurrently; their outcomes are independent and reported
separately, so a failed non-critical search never blocks itinerary generation.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from travel_planner.datasource.amadeus import (
    AmadeusAuth,
    AmadeusFlightAdapter,
    AmadeusHotelAdapter,
    AmadeusLocationAdapter,
)
from travel_planner.datasource.anthropic import AnthropicItineraryAdapter
from travel_planner.datasource.base import ServiceAdapter
from travel_planner.fallbacks import register_default_fallbacks
from travel_planner.models import (
    ActivitySuggestionRequest,
    FlightSearchRequest,
    HotelSearchRequest,
    ItineraryRefinementRequest,
    ItineraryRequest,
    LocationSearchRequest,
    TripPlanRequest,
)
from travel_planner.services.cache import ResponseCache
from travel_planner.services.circuit_breaker import CircuitBreakerRegistry, CircuitState
from travel_planner.services.config import ResilienceConfig
from travel_planner.services.errors import NotFoundError, ServiceError, ValidationError
from travel_planner.services.fallback import FallbackRegistry, OperationResult
from travel_planner.services.health import (
    DependencyHealthGraph,
    HealthCheck,
    HealthMonitor,
    HealthRecord,
    HealthState,
)
from travel_planner.services.pipeline import ResiliencePipeline
from travel_planner.services.retry import RetryExecutor, RetryPolicy
from travel_planner.settings import Settings

M = TypeVar("M", bound=BaseModel)

# Operation name -> dependency it runs against
OPERATIONS = {
    "generate_itinerary": "ai_generation",
    "search_flights": "flight_search",
    "search_hotels": "hotel_search",
    "search_locations": "location_search",
    "refine_itinerary": "ai_generation",
    "suggest_activities": "ai_generation",
}


@dataclass
class PipelineOutcome:
    """Outcome of one pipeline within a trip plan."""

    operation: str
    service_id: str
    critical: bool
    result: OperationResult[Any] | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "service_id": self.service_id,
            "critical": self.critical,
            "ok": self.ok,
            "result": self.result.to_dict() if self.result else None,
            "error": (
                {"kind": self.error.kind.value, "message": str(self.error)}
                if self.error
                else None
            ),
        }


@dataclass
class TripPlan:
    """Aggregated outcomes for one trip planning request."""

    outcomes: dict[str, PipelineOutcome] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        """All critical pipelines produced a result (primary or fallback)."""
        return all(o.ok for o in self.outcomes.values() if o.critical)

    @property
    def degraded(self) -> bool:
        return any(
            not o.ok or (o.result is not None and o.result.is_fallback)
            for o in self.outcomes.values()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "degraded": self.degraded,
            "created_at": self.created_at.isoformat(),
            "outcomes": {name: o.to_dict() for name, o in self.outcomes.items()},
        }


def validate_params(model: type[M], params: M | dict[str, Any]) -> M:
    """Coerce raw params into a request model; failures are caller faults."""
    if isinstance(params, model):
        return params
    try:
        return model.model_validate(params)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


class TravelOrchestrator:
    """
    Public travel operations with caching, circuit breaking, retries,
    fallbacks and dependency health tracking.

    Usage:
        async with TravelOrchestrator(config, adapters) as orchestrator:
            result = await orchestrator.search_flights({...})
            if result.is_fallback:
                ...
    """

    def __init__(
        self,
        config: ResilienceConfig,
        adapters: Iterable[ServiceAdapter[Any, Any]],
        fallbacks: FallbackRegistry | None = None,
        cache: ResponseCache | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        health_checks: Mapping[str, HealthCheck] | None = None,
        debug: bool = False,
    ):
        self.config = config
        self.health = DependencyHealthGraph(config.all_dependency_ids, config.edges, clock=clock)
        self.breakers = CircuitBreakerRegistry.from_descriptors(
            config.dependencies, clock=clock, listeners=[self.health]
        )
        self.cache = cache or ResponseCache(
            max_size=config.cache_max_size,
            timeout=config.cache_timeout,
            clock=clock,
            debug=debug,
        )
        self.fallbacks = fallbacks if fallbacks is not None else FallbackRegistry()
        self.monitor = HealthMonitor(
            self.health,
            timeout=config.health_check_timeout,
            unhealthy_after=config.unhealthy_after_failures,
        )
        if "cache_store" in config.all_dependency_ids:
            self.monitor.register("cache_store", self.cache.ping)

        self._pipelines: dict[str, ResiliencePipeline[Any, Any]] = {}
        for adapter in adapters:
            descriptor = config.get(adapter.service_id)
            if not adapter.is_configured():
                logger.warning(f"Adapter '{adapter.service_id}' is missing credentials")
            self._pipelines[adapter.service_id] = ResiliencePipeline(
                descriptor,
                adapter,
                self.breakers.get(adapter.service_id),
                self.cache,
                self.fallbacks,
                RetryExecutor(
                    adapter.service_id, RetryPolicy.from_descriptor(descriptor), sleep=sleep
                ),
                upstream_check=partial(self.health.unhealthy_upstreams, adapter.service_id),
            )
            self.monitor.register(adapter.service_id, adapter.health_check)
            logger.debug(f"Registered pipeline: {adapter.service_id}")

        for service_id, check in (health_checks or {}).items():
            self.monitor.register(service_id, check)

    def pipeline(self, service_id: str) -> ResiliencePipeline[Any, Any]:
        try:
            return self._pipelines[service_id]
        except KeyError:
            raise ValueError(f"No adapter registered for dependency '{service_id}'") from None

    async def _run(
        self,
        operation: str,
        request: BaseModel,
        timeout: float | None,
    ) -> OperationResult[Any]:
        pipeline = self.pipeline(OPERATIONS[operation])
        return await pipeline.execute(
            operation,
            request,
            timeout=timeout if timeout is not None else self.config.operation_deadline,
        )

    async def generate_itinerary(
        self,
        params: ItineraryRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> OperationResult[Any]:
        """Generate an itinerary with the AI service, or a template fallback."""
        request = validate_params(ItineraryRequest, params)
        return await self._run("generate_itinerary", request, timeout)

    async def search_flights(
        self,
        params: FlightSearchRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> OperationResult[Any]:
        """Search flight offers."""
        request = validate_params(FlightSearchRequest, params)
        return await self._run("search_flights", request, timeout)

    async def search_hotels(
        self,
        params: HotelSearchRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> OperationResult[Any]:
        """Search hotel offers."""
        request = validate_params(HotelSearchRequest, params)
        return await self._run("search_hotels", request, timeout)

    async def search_locations(
        self,
        params: LocationSearchRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> OperationResult[Any]:
        """Look up airports or cities by keyword."""
        request = validate_params(LocationSearchRequest, params)
        return await self._run("search_locations", request, timeout)

    async def refine_itinerary(
        self,
        params: ItineraryRefinementRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> OperationResult[Any]:
        """Apply a change request to an existing itinerary; falls back to it unchanged."""
        request = validate_params(ItineraryRefinementRequest, params)
        return await self._run("refine_itinerary", request, timeout)

    async def suggest_activities(
        self,
        params: ActivitySuggestionRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> OperationResult[Any]:
        request = validate_params(ActivitySuggestionRequest, params)
        return await self._run("suggest_activities", request, timeout)

    async def plan_trip(
        self,
        params: TripPlanRequest | dict[str, Any],
        timeout: float | None = None,
    ) -> TripPlan:
        """
        Run flights, hotels and itinerary generation concurrently.

        Each pipeline's outcome is captured independently; only errors that
        are not ServiceErrors (programming errors) propagate.
        """
        request = validate_params(TripPlanRequest, params)

        jobs: list[tuple[str, Awaitable[OperationResult[Any]]]] = [
            ("generate_itinerary", self.generate_itinerary(request.itinerary, timeout))
        ]
        if request.flights is not None:
            jobs.append(("search_flights", self.search_flights(request.flights, timeout)))
        if request.hotels is not None:
            jobs.append(("search_hotels", self.search_hotels(request.hotels, timeout)))

        results = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)

        plan = TripPlan()
        for (operation, _), result in zip(jobs, results):
            service_id = OPERATIONS[operation]
            outcome = PipelineOutcome(
                operation=operation,
                service_id=service_id,
                critical=self.config.get(service_id).critical,
            )
            if isinstance(result, ServiceError):
                outcome.error = result
                logger.warning(f"Trip plan: {operation} failed: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome.result = result
            plan.outcomes[operation] = outcome

        return plan

    def get_health(self) -> dict[str, HealthRecord]:
        """Health record per dependency."""
        return self.health.snapshot()

    def get_overall_health(self) -> HealthState:
        return self.health.overall_state()

    async def run_health_checks(self) -> dict[str, bool]:
        """Run every registered health check once and feed the results into the graph."""
        return await self.monitor.run_once()

    def start_health_checks(self) -> bool:
        """Start the background health check schedule if one is configured."""
        if self.config.health_check_interval <= 0:
            return False
        self.monitor.start(self.config.health_check_interval)
        return True

    def reset_circuits(self, service_id: str | None = None) -> list[str]:
        """
        Force breakers closed, one or all. Returns the dependencies whose
        breaker was not CLOSED before the reset.
        """
        if service_id is None:
            return self.breakers.reset_all()
        if service_id not in self._pipelines:
            raise NotFoundError(f"No circuit breaker for '{service_id}'")
        was_tripped = self.breakers.get(service_id).state != CircuitState.CLOSED
        self.breakers.reset(service_id)
        return [service_id] if was_tripped else []

    def get_status(self) -> dict[str, Any]:
        """Operational status of every resilience component."""
        return {
            "status": self.health.overall_state().value,
            "dependencies": {
                sid: record.model_dump(mode="json")
                for sid, record in self.health.snapshot().items()
            },
            "circuit_breakers": self.breakers.get_all_status(),
            "open_circuits": self.breakers.get_open_circuits(),
            "health_checks": self.monitor.service_ids,
            "cache": self.cache.get_stats().to_dict(),
            "fallbacks": self.fallbacks.get_stats(),
        }

    async def close(self) -> None:
        """Stop the health checks and close every adapter."""
        self.monitor.stop()
        for pipeline in self._pipelines.values():
            await pipeline.adapter.close()
        logger.debug("TravelOrchestrator closed")

    async def __aenter__(self) -> "TravelOrchestrator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()


def create_orchestrator(settings: Settings) -> TravelOrchestrator:
    """Wire the production adapters and default fallbacks from settings."""
    auth = AmadeusAuth(
        settings.amadeus_client_id,
        settings.amadeus_client_secret,
        base_url=settings.amadeus_base_url,
        timeout=settings.amadeus_timeout,
    )
    adapters: list[ServiceAdapter[Any, Any]] = [
        AnthropicItineraryAdapter(
            settings.anthropic_api_key,
            model=settings.anthropic_model,
            max_tokens=settings.anthropic_max_tokens,
            temperature=settings.anthropic_temperature,
            base_url=settings.anthropic_base_url,
            timeout=settings.anthropic_timeout,
        ),
    ]
    adapters.extend(
        search(auth, base_url=settings.amadeus_base_url, timeout=settings.amadeus_timeout)
        for search in (AmadeusFlightAdapter, AmadeusHotelAdapter, AmadeusLocationAdapter)
    )
    return TravelOrchestrator(
        settings.build_resilience_config(),
        adapters,
        fallbacks=register_default_fallbacks(FallbackRegistry()),
        health_checks={auth.service_id: auth.health_check},
        debug=settings.debug,
    )


# Global orchestrator instance
_global_orchestrator: TravelOrchestrator | None = None


def get_orchestrator() -> TravelOrchestrator:
    """Get the global orchestrator instance."""
    global _global_orchestrator
    if _global_orchestrator is None:
        from travel_planner.settings import global_settings

        _global_orchestrator = create_orchestrator(global_settings)
    return _global_orchestrator


async def close_orchestrator() -> None:
    """Close the global orchestrator."""
    global _global_orchestrator
    if _global_orchestrator:
        await _global_orchestrator.close()
        _global_orchestrator = None
