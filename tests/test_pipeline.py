from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from travel_planner.fallbacks import register_default_fallbacks
from travel_planner.services.cache import ResponseCache
from travel_planner.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from travel_planner.services.config import DependencyDescriptor
from travel_planner.services.errors import (
    PermanentServiceError,
    ServiceUnavailableError,
    UpstreamUnavailableError,
    ValidationError,
)
from travel_planner.services.fallback import FallbackRegistry, Provenance
from travel_planner.services.pipeline import ResiliencePipeline
from travel_planner.services.retry import RetryExecutor, RetryPolicy

DESCRIPTOR = DependencyDescriptor(
    service_id="flight_search",
    failure_threshold=3,
    cooldown=timedelta(seconds=5),
    max_retries=1,
    cache_ttl=timedelta(minutes=15),
)
REQUEST = {"origin": "JFK", "destination": "LIS"}


def make_pipeline(
    adapter, clock, sleep, fallbacks=None, descriptor=DESCRIPTOR, upstream_check=None
):
    return ResiliencePipeline(
        descriptor,
        adapter,
        CircuitBreaker(
            descriptor.service_id,
            CircuitBreakerConfig.from_descriptor(descriptor),
            clock=clock,
        ),
        ResponseCache(clock=clock),
        fallbacks if fallbacks is not None else FallbackRegistry(),
        RetryExecutor(descriptor.service_id, RetryPolicy.from_descriptor(descriptor), sleep=sleep),
        upstream_check=upstream_check,
    )


def registry_with(operation="search_flights", payload=None, confidence=0.2):
    registry = FallbackRegistry()
    generator = MagicMock(return_value=(payload or {"data": []}, confidence))
    registry.register(operation, generator)
    return registry, generator


@pytest.mark.asyncio
async def test_primary_result_is_cached(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search", default={"data": ["offer"]})
    pipeline = make_pipeline(adapter, clock, instant_sleep)

    first = await pipeline.execute("search_flights", REQUEST)
    second = await pipeline.execute("search_flights", REQUEST)

    assert first.provenance == Provenance.PRIMARY
    assert first.confidence == 1.0
    assert second.provenance == Provenance.CACHE
    assert second.data == {"data": ["offer"]}
    assert adapter.calls == 1


@pytest.mark.asyncio
async def test_cache_can_be_skipped(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search")
    pipeline = make_pipeline(adapter, clock, instant_sleep)

    await pipeline.execute("search_flights", REQUEST, use_cache=False)
    await pipeline.execute("search_flights", REQUEST, use_cache=False)
    assert adapter.calls == 2


@pytest.mark.asyncio
async def test_validation_error_never_reaches_fallback(clock, instant_sleep, make_adapter):
    registry, generator = registry_with()
    adapter = make_adapter("flight_search", fail_with=lambda: ValidationError("bad dates"))
    pipeline = make_pipeline(adapter, clock, instant_sleep, registry)

    with pytest.raises(ValidationError):
        await pipeline.execute("search_flights", REQUEST)

    generator.assert_not_called()
    assert adapter.calls == 1
    assert pipeline.breaker.failure_count == 0


@pytest.mark.asyncio
async def test_exhausted_retries_use_fallback(clock, instant_sleep, make_adapter):
    registry, generator = registry_with(confidence=0.3)
    adapter = make_adapter("flight_search", fail_with=lambda: ServiceUnavailableError("503"))
    pipeline = make_pipeline(adapter, clock, instant_sleep, registry)

    result = await pipeline.execute("search_flights", REQUEST)

    assert result.is_fallback
    assert result.confidence == 0.3
    assert result.reason == "unavailable"
    assert adapter.calls == 2
    assert instant_sleep.delays == [0.5]
    generator.assert_called_once()


@pytest.mark.asyncio
async def test_no_fallback_propagates_error(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search", fail_with=lambda: PermanentServiceError("garbage"))
    pipeline = make_pipeline(adapter, clock, instant_sleep)

    with pytest.raises(PermanentServiceError):
        await pipeline.execute("search_flights", REQUEST)
    assert adapter.calls == 1


@pytest.mark.asyncio
async def test_breaker_opens_then_recovers(clock, instant_sleep, make_adapter):
    registry, _ = registry_with()
    adapter = make_adapter(
        "flight_search",
        fail_with=lambda: ServiceUnavailableError("503", service_id="flight_search"),
    )
    pipeline = make_pipeline(adapter, clock, instant_sleep, registry)

    # Two attempts, both counted
    first = await pipeline.execute("search_flights", REQUEST)
    assert first.reason == "unavailable"
    assert adapter.calls == 2

    # Third counted failure opens the breaker, so no retry follows
    second = await pipeline.execute("search_flights", REQUEST)
    assert adapter.calls == 3
    assert pipeline.breaker.state == CircuitState.OPEN
    assert second.is_fallback

    # Open breaker: adapter untouched, fallback served
    third = await pipeline.execute("search_flights", REQUEST)
    assert adapter.calls == 3
    assert third.reason == "breaker_open"

    clock.advance(5)
    adapter.fail_with = None
    recovered = await pipeline.execute("search_flights", REQUEST)

    assert recovered.provenance == Provenance.PRIMARY
    assert adapter.calls == 4
    assert pipeline.breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_fallback_receives_stale_cache(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search", default={"data": ["cached offer"]})
    pipeline = make_pipeline(
        adapter, clock, instant_sleep, register_default_fallbacks(FallbackRegistry())
    )
    await pipeline.execute("search_flights", REQUEST)

    clock.advance(15 * 60 + 1)
    adapter.fail_with = lambda: PermanentServiceError("garbage")
    result = await pipeline.execute("search_flights", REQUEST)

    assert result.is_fallback
    assert result.from_stale_cache
    assert result.data == {"data": ["cached offer"]}
    assert result.confidence == 0.7


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_is_permanent(clock, instant_sleep, make_adapter):
    registry, _ = registry_with()
    adapter = make_adapter("flight_search", fail_with=lambda: KeyError("price"))
    pipeline = make_pipeline(adapter, clock, instant_sleep, registry)

    result = await pipeline.execute("search_flights", REQUEST)

    assert result.reason == "permanent"
    assert adapter.calls == 1
    assert pipeline.breaker.failure_count == 1


def test_adapter_must_match_descriptor(clock, instant_sleep, make_adapter):
    with pytest.raises(ValueError):
        make_pipeline(make_adapter("hotel_search"), clock, instant_sleep)


@pytest.mark.asyncio
async def test_unhealthy_upstream_skips_the_call(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search")
    registry, generator = registry_with(payload={"data": ["fallback"]})
    pipeline = make_pipeline(
        adapter, clock, instant_sleep, fallbacks=registry, upstream_check=lambda: ["amadeus_auth"]
    )

    result = await pipeline.execute("search_flights", REQUEST)

    assert adapter.calls == 0
    assert result.provenance == Provenance.FALLBACK
    assert result.reason == "upstream_unavailable"
    assert generator.call_args.args[0].error.upstreams == ["amadeus_auth"]
    assert pipeline.breaker.failure_count == 0


@pytest.mark.asyncio
async def test_unhealthy_upstream_without_fallback_raises(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search")
    pipeline = make_pipeline(
        adapter, clock, instant_sleep, upstream_check=lambda: ["amadeus_auth"]
    )

    with pytest.raises(UpstreamUnavailableError):
        await pipeline.execute("search_flights", REQUEST)
    assert adapter.calls == 0


@pytest.mark.asyncio
async def test_fresh_cache_is_served_despite_unhealthy_upstream(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search", default={"data": ["offer"]})
    blocked: list[str] = []
    pipeline = make_pipeline(adapter, clock, instant_sleep, upstream_check=lambda: blocked)

    await pipeline.execute("search_flights", REQUEST)
    blocked.append("amadeus_auth")
    result = await pipeline.execute("search_flights", REQUEST)

    assert result.provenance == Provenance.CACHE
    assert adapter.calls == 1


@pytest.mark.asyncio
async def test_mutating_a_result_does_not_change_the_cache(clock, instant_sleep, make_adapter):
    adapter = make_adapter("flight_search", default={"data": ["offer"]})
    pipeline = make_pipeline(adapter, clock, instant_sleep)

    first = await pipeline.execute("search_flights", REQUEST)
    first.data["data"].append("tampered")
    second = await pipeline.execute("search_flights", REQUEST)
    second.data["data"].clear()
    third = await pipeline.execute("search_flights", REQUEST)

    assert third.provenance == Provenance.CACHE
    assert third.data == {"data": ["offer"]}
