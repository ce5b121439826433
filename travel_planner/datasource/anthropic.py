"""
Anthropic Messages API adapter for the AI travel operations: itinerary
generation, itinerary refinement and activity suggestions.

API Documentation: https://docs.anthropic.com/en/api/messages
"""

import json
from typing import Any, Union

import httpx

from travel_planner.datasource.base import HttpServiceAdapter
from travel_planner.models import (
    ActivitySuggestionRequest,
    ItineraryRefinementRequest,
    ItineraryRequest,
)
from travel_planner.services.errors import PermanentServiceError, ValidationError

REQUIRED_KEYS = ("overview", "dailyItinerary")

AIRequest = Union[ItineraryRequest, ItineraryRefinementRequest, ActivitySuggestionRequest]

REFINEMENT_GOALS = {
    "modify_activity": "Replace or adjust the activities described in the details.",
    "change_budget": "Rework the plan to fit the new budget in the details.",
    "adjust_pace": "Change how packed each day is, as described in the details.",
    "add_preferences": "Work the additional preferences in the details into the plan.",
}


def build_itinerary_prompt(params: ItineraryRequest) -> str:
    """Render the generation prompt for an itinerary request."""
    lines = [
        "You are a professional travel planner. Create a day-by-day itinerary.",
        f"Destination: {params.destination}",
        f"Dates: {params.start_date.isoformat()} to {params.end_date.isoformat()} "
        f"({params.duration} days)",
        f"Travelers: {params.travelers.adults} adults, {params.travelers.children} children",
        f"Budget: {params.budget.total:.0f} {params.budget.currency}",
        f"Pace: {params.pace}",
    ]
    if params.interests:
        lines.append(f"Interests: {', '.join(params.interests)}")
    if params.must_visit:
        lines.append(f"Must visit: {', '.join(params.must_visit)}")
    if params.avoid_areas:
        lines.append(f"Avoid: {', '.join(params.avoid_areas)}")
    lines.append(
        "Respond with a single JSON object with keys 'overview' "
        "(title, description, highlights), 'totalBudget' (estimated, currency) and "
        "'dailyItinerary' (a list with day, date, theme and activities)."
    )
    return "\n".join(lines)


def build_refinement_prompt(params: ItineraryRefinementRequest) -> str:
    itinerary = {k: v for k, v in params.itinerary.items() if k != "generationMetadata"}
    lines = [
        "You are a professional travel planner. Refine the itinerary below.",
        f"Change requested: {params.refinement_type}. {REFINEMENT_GOALS[params.refinement_type]}",
        f"Details: {json.dumps(params.details, sort_keys=True)}",
    ]
    if params.user_feedback:
        lines.append(f"Traveler feedback: {params.user_feedback}")
    lines.extend(
        [
            "Current itinerary:",
            json.dumps(itinerary, indent=2, sort_keys=True),
            "Keep everything the change does not touch. Respond with the complete "
            "refined itinerary as a single JSON object with the same keys.",
        ]
    )
    return "\n".join(lines)


def build_suggestions_prompt(params: ActivitySuggestionRequest) -> str:
    lines = [
        f"Suggest activities for a {params.duration}-day stay in {params.destination}.",
        f"Activity budget: {params.budget:.0f} in total.",
    ]
    if params.interests:
        lines.append(f"Interests: {', '.join(params.interests)}")
    lines.append(
        "Respond with a single JSON object with key 'activities': a list of objects "
        "with name, description, category, estimatedCost and duration."
    )
    return "\n".join(lines)


def _extract_json_object(text: str, service_id: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise PermanentServiceError("No JSON object in model response", service_id=service_id)

    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        raise PermanentServiceError(
            f"Invalid JSON in model response: {e}", service_id=service_id
        ) from e


def parse_itinerary_text(text: str, service_id: str) -> dict[str, Any]:
    """Extract the itinerary JSON object from the model's text output."""
    itinerary = _extract_json_object(text, service_id)
    if not isinstance(itinerary, dict) or any(k not in itinerary for k in REQUIRED_KEYS):
        raise PermanentServiceError("Invalid itinerary structure", service_id=service_id)
    if not isinstance(itinerary["dailyItinerary"], list):
        raise PermanentServiceError("dailyItinerary is not a list", service_id=service_id)
    return itinerary


def parse_activity_suggestions(text: str, service_id: str) -> list[dict[str, Any]]:
    payload = _extract_json_object(text, service_id)
    activities = payload.get("activities") if isinstance(payload, dict) else None
    if not isinstance(activities, list):
        raise PermanentServiceError("Suggestions missing 'activities' list", service_id=service_id)
    return [a for a in activities if isinstance(a, dict) and a.get("name")]


class AnthropicItineraryAdapter(HttpServiceAdapter[AIRequest, dict[str, Any]]):
    """
    Itinerary generation, refinement and activity suggestions through the
    Anthropic Messages API. The operation is chosen by the request type.
    """

    BASE_URL = "https://api.anthropic.com"
    API_VERSION = "2023-06-01"
    SERVICE_ID = "ai_generation"

    # Refinements stay close to the original plan, suggestions may wander
    REFINEMENT_TEMPERATURE = 0.5
    SUGGESTION_TEMPERATURE = 0.8
    SUGGESTION_MAX_TOKENS = 2000

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-latest",
        max_tokens: int = 4000,
        temperature: float = 0.7,
        base_url: str | None = None,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            base_url or self.BASE_URL,
            timeout=timeout,
            headers={
                "x-api-key": api_key,
                "anthropic-version": self.API_VERSION,
                "content-type": "application/json",
            },
            http_client=http_client,
        )
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def call(self, request: AIRequest) -> dict[str, Any]:
        if isinstance(request, ItineraryRequest):
            text, body = await self._complete(
                build_itinerary_prompt(request), self.max_tokens, self.temperature
            )
            itinerary = parse_itinerary_text(text, self.service_id)
            itinerary["generationMetadata"] = self._metadata(body)
            return itinerary

        if isinstance(request, ItineraryRefinementRequest):
            text, body = await self._complete(
                build_refinement_prompt(request), self.max_tokens, self.REFINEMENT_TEMPERATURE
            )
            itinerary = parse_itinerary_text(text, self.service_id)
            previous = request.itinerary.get("generationMetadata") or {}
            metadata = self._metadata(body)
            metadata["tokensUsed"] += int(previous.get("tokensUsed", 0))
            metadata["refinementType"] = request.refinement_type
            itinerary["generationMetadata"] = metadata
            return itinerary

        if isinstance(request, ActivitySuggestionRequest):
            text, body = await self._complete(
                build_suggestions_prompt(request),
                self.SUGGESTION_MAX_TOKENS,
                self.SUGGESTION_TEMPERATURE,
            )
            return {
                "activities": parse_activity_suggestions(text, self.service_id),
                "generationMetadata": self._metadata(body),
            }

        raise ValidationError(
            f"Unsupported request type: {type(request).__name__}", service_id=self.service_id
        )

    async def health_check(self) -> bool:
        """Send a minimal message; any text answer means the API is usable."""
        if not self.is_configured():
            return False
        body = await self._send(
            "POST",
            "/v1/messages",
            json_data={
                "model": self.model,
                "max_tokens": 10,
                "messages": [{"role": "user", "content": "Hello"}],
            },
        )
        return isinstance(body, dict) and bool(body.get("content"))

    async def _complete(
        self, prompt: str, max_tokens: int, temperature: float
    ) -> tuple[str, dict[str, Any]]:
        body = await self._send(
            "POST",
            "/v1/messages",
            json_data={
                "model": self.model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
        )

        try:
            block = body["content"][0]
            text = block["text"] if block.get("type") == "text" else None
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise PermanentServiceError(
                "Unexpected response format from Anthropic API", service_id=self.service_id
            ) from e
        if not text:
            raise PermanentServiceError(
                "Unexpected response format from Anthropic API", service_id=self.service_id
            )
        return text, body

    def _metadata(self, body: dict[str, Any]) -> dict[str, Any]:
        usage = body.get("usage") or {}
        return {
            "model": body.get("model", self.model),
            "tokensUsed": usage.get("input_tokens", 0) + usage.get("output_tokens", 0),
        }
