"""FastAPI server exposing the travel operations."""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from loguru import logger

from travel_planner.exceptions import to_http_exception
from travel_planner.models import (
    ActivitySuggestionRequest,
    FlightSearchRequest,
    HotelSearchRequest,
    ItineraryRefinementRequest,
    ItineraryRequest,
    TripPlanRequest,
)
from travel_planner.orchestrator import TravelOrchestrator
from travel_planner.services.errors import ServiceError
from travel_planner.services.health import HealthState


class TravelServer:
    """HTTP server for the travel planner."""

    def __init__(self, orchestrator: TravelOrchestrator):
        self.orchestrator = orchestrator
        self.app = FastAPI(title="Travel Planner", lifespan=self._lifespan)

        # Register routes
        self.app.post("/itineraries/generate")(self.generate_itinerary)
        self.app.post("/itineraries/refine")(self.refine_itinerary)
        self.app.post("/activities/suggest")(self.suggest_activities)
        self.app.post("/search/flights")(self.search_flights)
        self.app.post("/search/hotels")(self.search_hotels)
        self.app.get("/search/locations")(self.search_locations)
        self.app.post("/trips/plan")(self.plan_trip)
        self.app.get("/health")(self.health_check)
        self.app.post("/health/check")(self.run_health_checks)
        self.app.post("/circuits/reset")(self.reset_circuits)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        logger.info("Travel planner API starting")
        if self.orchestrator.start_health_checks():
            logger.info("Background health checks enabled")
        yield
        await self.orchestrator.close()
        logger.info("Travel planner API stopped")

    async def generate_itinerary(self, request: ItineraryRequest) -> dict[str, Any]:
        """Generate a day-by-day itinerary."""
        try:
            result = await self.orchestrator.generate_itinerary(request)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return result.to_dict()

    async def refine_itinerary(self, request: ItineraryRefinementRequest) -> dict[str, Any]:
        """Refine an existing itinerary."""
        try:
            result = await self.orchestrator.refine_itinerary(request)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return result.to_dict()

    async def suggest_activities(self, request: ActivitySuggestionRequest) -> dict[str, Any]:
        try:
            result = await self.orchestrator.suggest_activities(request)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return result.to_dict()

    async def search_flights(self, request: FlightSearchRequest) -> dict[str, Any]:
        """Search flight offers."""
        try:
            result = await self.orchestrator.search_flights(request)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return result.to_dict()

    async def search_hotels(self, request: HotelSearchRequest) -> dict[str, Any]:
        """Search hotel offers."""
        try:
            result = await self.orchestrator.search_hotels(request)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return result.to_dict()

    async def search_locations(
        self, keyword: str, sub_type: str = "AIRPORT", max_results: int = 10
    ) -> dict[str, Any]:
        """Airport and city lookup for autocomplete."""
        params = {"keyword": keyword, "sub_type": sub_type, "max_results": max_results}
        try:
            result = await self.orchestrator.search_locations(params)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return result.to_dict()

    async def plan_trip(self, request: TripPlanRequest) -> JSONResponse:
        """Plan a trip; 503 only when a critical part could not be served."""
        try:
            plan = await self.orchestrator.plan_trip(request)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return JSONResponse(
            content=plan.to_dict(),
            status_code=200 if plan.succeeded else 503,
        )

    async def health_check(self) -> JSONResponse:
        """Health of every dependency plus breaker and cache status."""
        status = self.orchestrator.get_status()
        unhealthy = self.orchestrator.get_overall_health() == HealthState.UNHEALTHY
        return JSONResponse(content=status, status_code=503 if unhealthy else 200)

    async def run_health_checks(self) -> dict[str, Any]:
        """Run every health check now and return the refreshed status."""
        results = await self.orchestrator.run_health_checks()
        return {"results": results, **self.orchestrator.get_status()}

    async def reset_circuits(self, service_id: str | None = None) -> dict[str, Any]:
        """Force one or all circuit breakers closed."""
        try:
            reset = self.orchestrator.reset_circuits(service_id)
        except ServiceError as e:
            raise to_http_exception(e) from e
        return {"reset": reset, "open_circuits": self.orchestrator.breakers.get_open_circuits()}


def create_app(orchestrator: TravelOrchestrator) -> FastAPI:
    """Create FastAPI app for the travel planner.

    Args:
        orchestrator: TravelOrchestrator instance

    Returns:
        FastAPI app
    """
    server = TravelServer(orchestrator)
    return server.app
