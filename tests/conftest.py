from datetime import datetime, timedelta
from typing import Any, Callable

import pytest

from travel_planner.datasource.base import ServiceAdapter
from travel_planner.services.config import DependencyDescriptor, ResilienceConfig


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InstantSleep:
    """Replacement for asyncio.sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeAdapter(ServiceAdapter[Any, Any]):
    """Scripted adapter: plays back outcomes, then returns the default result."""

    def __init__(
        self,
        service_id: str,
        outcomes: list[Any] | None = None,
        default: Any = None,
        fail_with: Callable[[], Exception] | None = None,
    ):
        self._service_id = service_id
        self.outcomes = list(outcomes or [])
        self.default = default if default is not None else {"source": service_id, "data": [1, 2]}
        self.fail_with = fail_with
        self.calls = 0
        self.requests: list[Any] = []
        self.closed = False

    @property
    def service_id(self) -> str:
        return self._service_id

    async def call(self, request: Any) -> Any:
        self.calls += 1
        self.requests.append(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        if self.fail_with is not None:
            raise self.fail_with()
        return self.default

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def instant_sleep() -> InstantSleep:
    return InstantSleep()


@pytest.fixture
def resilience_config() -> ResilienceConfig:
    common = dict(
        failure_threshold=3,
        cooldown=timedelta(seconds=5),
        max_retries=1,
        base_delay=timedelta(seconds=0.5),
        cap_delay=timedelta(seconds=4),
    )
    return ResilienceConfig(
        dependencies=(
            DependencyDescriptor(
                service_id="ai_generation",
                cache_ttl=timedelta(hours=1),
                critical=True,
                **common,
            ),
            DependencyDescriptor(
                service_id="flight_search",
                cache_ttl=timedelta(minutes=15),
                **common,
            ),
            DependencyDescriptor(
                service_id="hotel_search",
                cache_ttl=timedelta(minutes=30),
                **common,
            ),
        ),
        passive_dependencies=("database",),
        edges=(),
    )


@pytest.fixture
def itinerary_params() -> dict[str, Any]:
    return {
        "destination": "Lisbon",
        "start_date": "2027-05-01",
        "end_date": "2027-05-03",
        "travelers": {"adults": 2},
        "budget": {"total": 1500, "currency": "EUR"},
        "interests": ["food", "history"],
        "must_visit": ["Belem Tower"],
    }


@pytest.fixture
def flight_params() -> dict[str, Any]:
    return {
        "origin": "JFK",
        "destination": "LIS",
        "departure_date": "2027-05-01",
        "return_date": "2027-05-03",
        "adults": 2,
    }


@pytest.fixture
def hotel_params() -> dict[str, Any]:
    return {
        "city_code": "LIS",
        "check_in_date": "2027-05-01",
        "check_out_date": "2027-05-03",
        "adults": 2,
    }


@pytest.fixture
def make_adapter() -> type[FakeAdapter]:
    return FakeAdapter
