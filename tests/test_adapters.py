import json

import httpx
import pytest

from travel_planner.datasource.amadeus import (
    AmadeusAuth,
    AmadeusFlightAdapter,
    AmadeusHotelAdapter,
    AmadeusLocationAdapter,
)
from travel_planner.datasource.anthropic import (
    AnthropicItineraryAdapter,
    build_itinerary_prompt,
    build_refinement_prompt,
)
from travel_planner.models import (
    ActivitySuggestionRequest,
    FlightSearchRequest,
    HotelSearchRequest,
    ItineraryRefinementRequest,
    ItineraryRequest,
    LocationSearchRequest,
)
from travel_planner.services.errors import (
    NotFoundError,
    PermanentServiceError,
    RateLimitError,
    ServiceUnavailableError,
    TransientNetworkError,
    ValidationError,
)

ITINERARY = {
    "overview": {"title": "Three days in Lisbon"},
    "totalBudget": {"estimated": 1400, "currency": "EUR"},
    "dailyItinerary": [{"day": 1, "activities": []}],
}


def anthropic_body(text):
    return {
        "model": "claude-test",
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": 100, "output_tokens": 250},
    }


def make_anthropic(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicItineraryAdapter("sk-test", http_client=client)


@pytest.fixture
def itinerary_request(itinerary_params):
    return ItineraryRequest.model_validate(itinerary_params)


@pytest.mark.asyncio
async def test_anthropic_parses_itinerary(itinerary_request):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        text = "Here is your plan:\n" + json.dumps(ITINERARY)
        return httpx.Response(200, json=anthropic_body(text))

    adapter = make_anthropic(handler)
    result = await adapter.call(itinerary_request)

    assert seen["path"] == "/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert "Lisbon" in seen["body"]["messages"][0]["content"]
    assert result["overview"]["title"] == "Three days in Lisbon"
    assert result["generationMetadata"] == {"model": "claude-test", "tokensUsed": 350}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "text",
    ["no json here", "{not json}", json.dumps({"overview": {}})],
)
async def test_anthropic_rejects_malformed_itinerary(itinerary_request, text):
    adapter = make_anthropic(lambda request: httpx.Response(200, json=anthropic_body(text)))

    with pytest.raises(PermanentServiceError):
        await adapter.call(itinerary_request)


@pytest.mark.asyncio
async def test_anthropic_rejects_unexpected_envelope(itinerary_request):
    adapter = make_anthropic(lambda request: httpx.Response(200, json={"content": []}))

    with pytest.raises(PermanentServiceError):
        await adapter.call(itinerary_request)


@pytest.mark.asyncio
async def test_non_json_body_is_permanent(itinerary_request):
    adapter = make_anthropic(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(PermanentServiceError):
        await adapter.call(itinerary_request)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,expected",
    [
        (400, ValidationError),
        (404, NotFoundError),
        (401, PermanentServiceError),
        (500, ServiceUnavailableError),
        (529, ServiceUnavailableError),
    ],
)
async def test_http_status_classification(itinerary_request, status, expected):
    adapter = make_anthropic(lambda request: httpx.Response(status, json={"error": "x"}))

    with pytest.raises(expected) as exc_info:
        await adapter.call(itinerary_request)
    assert exc_info.value.service_id == "ai_generation"


@pytest.mark.asyncio
async def test_rate_limit_reads_retry_after(itinerary_request):
    adapter = make_anthropic(
        lambda request: httpx.Response(429, headers={"retry-after": "3"}, json={})
    )

    with pytest.raises(RateLimitError) as exc_info:
        await adapter.call(itinerary_request)
    assert exc_info.value.retry_after == 3.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error", [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")]
)
async def test_transport_failures_are_transient(itinerary_request, error):
    def handler(request):
        raise error

    adapter = make_anthropic(handler)
    with pytest.raises(TransientNetworkError):
        await adapter.call(itinerary_request)


@pytest.mark.asyncio
async def test_anthropic_refinement_keeps_token_total():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=anthropic_body(json.dumps(ITINERARY)))

    refinement = ItineraryRefinementRequest(
        itinerary={**ITINERARY, "generationMetadata": {"tokensUsed": 1000}},
        refinement_type="change_budget",
        details={"newBudget": 900},
    )
    result = await make_anthropic(handler).call(refinement)

    assert seen["body"]["temperature"] == 0.5
    assert '"newBudget": 900' in seen["body"]["messages"][0]["content"]
    assert result["generationMetadata"] == {
        "model": "claude-test",
        "tokensUsed": 1350,
        "refinementType": "change_budget",
    }


def test_refinement_prompt_drops_old_metadata():
    refinement = ItineraryRefinementRequest(
        itinerary={**ITINERARY, "generationMetadata": {"model": "old-model"}},
        refinement_type="adjust_pace",
        user_feedback="Fewer museums",
    )
    prompt = build_refinement_prompt(refinement)

    assert "old-model" not in prompt
    assert "Traveler feedback: Fewer museums" in prompt
    assert "Three days in Lisbon" in prompt


@pytest.mark.asyncio
async def test_anthropic_activity_suggestions():
    seen = {}
    text = json.dumps(
        {"activities": [{"name": "Port tasting", "category": "wine"}, {"category": "unnamed"}]}
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=anthropic_body(text))

    result = await make_anthropic(handler).call(
        ActivitySuggestionRequest(destination="Porto", interests=["wine"], budget=150, duration=2)
    )

    assert seen["body"]["max_tokens"] == 2000
    assert seen["body"]["temperature"] == 0.8
    assert result["activities"] == [{"name": "Port tasting", "category": "wine"}]
    assert result["generationMetadata"]["tokensUsed"] == 350


@pytest.mark.asyncio
async def test_anthropic_suggestions_require_activity_list():
    adapter = make_anthropic(
        lambda request: httpx.Response(200, json=anthropic_body('{"ideas": []}'))
    )

    with pytest.raises(PermanentServiceError):
        await adapter.call(
            ActivitySuggestionRequest(destination="Porto", budget=150, duration=2)
        )


@pytest.mark.asyncio
async def test_anthropic_rejects_unknown_request_type():
    adapter = make_anthropic(lambda request: httpx.Response(500))

    with pytest.raises(ValidationError):
        await adapter.call({"destination": "Lisbon"})


@pytest.mark.asyncio
async def test_anthropic_health_check():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=anthropic_body("Hi"))

    assert await make_anthropic(handler).health_check() is True
    assert seen["body"]["max_tokens"] == 10

    overloaded = make_anthropic(lambda request: httpx.Response(529, json={}))
    with pytest.raises(ServiceUnavailableError):
        await overloaded.health_check()
    assert await AnthropicItineraryAdapter("").health_check() is False


def test_prompt_mentions_preferences(itinerary_request):
    prompt = build_itinerary_prompt(itinerary_request)
    assert "Destination: Lisbon" in prompt
    assert "(3 days)" in prompt
    assert "Must visit: Belem Tower" in prompt


def test_configuration_check():
    assert not AnthropicItineraryAdapter("").is_configured()
    assert AnthropicItineraryAdapter("sk-test").is_configured()


class AmadeusStub:
    """Routes token and search requests like the Amadeus test API."""

    def __init__(self, token_status=200, search_body=None, revoked=()):
        self.token_status = token_status
        self.search_body = search_body or {"data": [{"id": "1"}], "meta": {"count": 1}}
        self.revoked = set(revoked)  # Tokens the search endpoints answer 401 for
        self.token_requests = 0
        self.searches: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/security/oauth2/token":
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            token = f"tok-{self.token_requests}"
            return httpx.Response(200, json={"access_token": token, "expires_in": 1799})
        self.searches.append(request)
        if request.headers["authorization"].removeprefix("Bearer ") in self.revoked:
            return httpx.Response(401, json={"errors": [{"code": 38190}]})
        return httpx.Response(200, json=self.search_body)


def make_amadeus(stub, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    auth = AmadeusAuth("id", "secret", http_client=client, clock=clock)
    return (
        auth,
        AmadeusFlightAdapter(auth, http_client=client),
        AmadeusHotelAdapter(auth, http_client=client),
    )


@pytest.mark.asyncio
async def test_amadeus_token_is_shared_and_cached(clock, flight_params, hotel_params):
    stub = AmadeusStub()
    auth, flights, hotels = make_amadeus(stub, clock)

    result = await flights.call(FlightSearchRequest.model_validate(flight_params))
    await hotels.call(HotelSearchRequest.model_validate(hotel_params))

    assert result == {"data": [{"id": "1"}], "meta": {"count": 1}, "dictionaries": {}}
    assert stub.token_requests == 1

    flight_request, hotel_request = stub.searches
    assert flight_request.headers["authorization"] == "Bearer tok-1"
    assert flight_request.url.path == "/v2/shopping/flight-offers"
    assert flight_request.url.params["originLocationCode"] == "JFK"
    assert flight_request.url.params["returnDate"] == "2027-05-03"
    assert "maxPrice" not in flight_request.url.params
    assert hotel_request.url.params["cityCode"] == "LIS"

    # Refreshed once the token is about to expire
    clock.advance(1799 - 60)
    await flights.call(FlightSearchRequest.model_validate(flight_params))
    assert stub.token_requests == 2


@pytest.mark.asyncio
async def test_amadeus_auth_failure_is_attributed_to_search(clock, flight_params):
    _, flights, _ = make_amadeus(AmadeusStub(token_status=401), clock)

    with pytest.raises(PermanentServiceError) as exc_info:
        await flights.call(FlightSearchRequest.model_validate(flight_params))
    assert exc_info.value.service_id == "flight_search"


@pytest.mark.asyncio
async def test_amadeus_search_requires_data_list(clock, hotel_params):
    _, _, hotels = make_amadeus(AmadeusStub(search_body={"errors": []}), clock)

    with pytest.raises(PermanentServiceError):
        await hotels.call(HotelSearchRequest.model_validate(hotel_params))


@pytest.mark.asyncio
async def test_adapters_do_not_close_injected_clients(clock):
    stub = AmadeusStub()
    auth, flights, _ = make_amadeus(stub, clock)

    await flights.close()
    assert not flights._http_client.is_closed
    assert not auth._http_client.is_closed


@pytest.mark.asyncio
async def test_revoked_token_is_refreshed_once(clock, flight_params):
    stub = AmadeusStub(revoked={"tok-1"})
    auth, flights, _ = make_amadeus(stub, clock)

    result = await flights.call(FlightSearchRequest.model_validate(flight_params))

    assert result["data"] == [{"id": "1"}]
    assert stub.token_requests == 2
    assert [r.headers["authorization"] for r in stub.searches] == ["Bearer tok-1", "Bearer tok-2"]
    assert await auth.call() == "tok-2"


@pytest.mark.asyncio
async def test_token_rejected_twice_is_permanent(clock, hotel_params):
    stub = AmadeusStub(revoked={"tok-1", "tok-2"})
    auth, _, hotels = make_amadeus(stub, clock)

    with pytest.raises(PermanentServiceError) as exc_info:
        await hotels.call(HotelSearchRequest.model_validate(hotel_params))

    assert exc_info.value.status_code == 401
    assert exc_info.value.service_id == "hotel_search"
    assert len(stub.searches) == 2
    assert await auth.call() == "tok-3"


def test_invalidate_ignores_a_replaced_token(clock):
    auth = AmadeusAuth("id", "secret", clock=clock)
    auth._token = "tok-2"

    auth.invalidate("tok-1")
    assert auth._token == "tok-2"
    auth.invalidate()
    assert auth._token is None


@pytest.mark.asyncio
async def test_location_search(clock):
    stub = AmadeusStub(search_body={"data": [{"iataCode": "LIS", "subType": "AIRPORT"}]})
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    auth = AmadeusAuth("id", "secret", http_client=client, clock=clock)
    locations = AmadeusLocationAdapter(auth, http_client=client)

    result = await locations.call(
        LocationSearchRequest(keyword=" lisbon ", sub_type="AIRPORT,CITY", max_results=5)
    )

    assert locations.service_id == "location_search"
    assert result["data"] == [{"iataCode": "LIS", "subType": "AIRPORT"}]
    request = stub.searches[0]
    assert request.url.path == "/v1/reference-data/locations"
    assert request.url.params["keyword"] == "LISBON"
    assert request.url.params["subType"] == "AIRPORT,CITY"
    assert request.url.params["page[limit]"] == "5"


@pytest.mark.asyncio
async def test_amadeus_health_check_forces_a_token_grant(clock):
    stub = AmadeusStub()
    auth, _, _ = make_amadeus(stub, clock)

    await auth.call()
    assert await auth.health_check() is True
    assert stub.token_requests == 2

    failing, _, _ = make_amadeus(AmadeusStub(token_status=401), clock)
    with pytest.raises(PermanentServiceError):
        await failing.health_check()
    assert await AmadeusAuth("", "", clock=clock).health_check() is False
