"""
Default fallback generators for the travel operations.

None of these touch the failing dependency. Each prefers stale cached data
for the same request and otherwise builds a template result.
"""

import copy
from datetime import datetime, timedelta
from typing import Any

from travel_planner.models import (
    ActivitySuggestionRequest,
    ItineraryRefinementRequest,
    ItineraryRequest,
)
from travel_planner.services.fallback import FallbackContext, FallbackRegistry

STALE_ITINERARY_CONFIDENCE = 0.8
TEMPLATE_ITINERARY_CONFIDENCE = 0.6
STALE_SEARCH_CONFIDENCE = 0.7
EMPTY_SEARCH_CONFIDENCE = 0.1
UNCHANGED_ITINERARY_CONFIDENCE = 0.3
STALE_SUGGESTIONS_CONFIDENCE = 0.7
GENERIC_SUGGESTIONS_CONFIDENCE = 0.4

# Share of the total budget per category in the template itinerary
BUDGET_SPLIT = {
    "accommodation": 0.4,
    "activities": 0.3,
    "food": 0.2,
    "transportation": 0.1,
}

DAY_THEMES = ["City Exploration", "Culture & History", "Local Life", "Nature & Views"]


def itinerary_fallback(ctx: FallbackContext) -> tuple[dict[str, Any], float]:
    """Simplified day-by-day template for the requested trip."""
    if ctx.stale is not None:
        return ctx.stale, STALE_ITINERARY_CONFIDENCE

    params: ItineraryRequest = ctx.request
    total = params.budget.total
    per_day = round(total / params.duration, 2)

    daily = []
    for offset in range(params.duration):
        day = params.start_date + timedelta(days=offset)
        daily.append(
            {
                "day": offset + 1,
                "date": day.isoformat(),
                "theme": DAY_THEMES[offset % len(DAY_THEMES)],
                "location": params.destination,
                "activities": [
                    {
                        "time": "10:00",
                        "duration": 180,
                        "type": "sightseeing",
                        "title": f"Explore {params.destination}",
                        "description": "Walk the main attractions at your own pace",
                    }
                ]
                + [
                    {
                        "time": "15:00",
                        "duration": 120,
                        "type": "cultural",
                        "title": place,
                        "description": "Requested must-visit",
                    }
                    for place in params.must_visit[offset :: params.duration]
                ],
                "dailyBudget": {"estimated": per_day},
                "tips": ["Start early", "Check the weather"],
            }
        )

    payload = {
        "overview": {
            "title": f"Basic {params.destination} Itinerary",
            "description": "Simplified itinerary due to service limitations",
            "highlights": ["Popular attractions", "Local restaurants"],
            "themes": ["Essential travel"],
        },
        "totalBudget": {
            "estimated": total,
            "currency": params.budget.currency,
            "breakdown": {k: round(total * share, 2) for k, share in BUDGET_SPLIT.items()},
        },
        "dailyItinerary": daily,
        "generationMetadata": {
            "model": "fallback-template",
            "tokensUsed": 0,
            "generatedAt": datetime.now().isoformat(),
        },
    }
    return payload, TEMPLATE_ITINERARY_CONFIDENCE


def _search_fallback(ctx: FallbackContext, kind: str) -> tuple[dict[str, Any], float]:
    if ctx.stale is not None:
        return ctx.stale, STALE_SEARCH_CONFIDENCE
    return (
        {
            "data": [],
            "meta": {
                "count": 0,
                "source": "fallback",
                "message": f"Live {kind} search is temporarily unavailable",
            },
            "dictionaries": {},
        },
        EMPTY_SEARCH_CONFIDENCE,
    )


def flight_search_fallback(ctx: FallbackContext) -> tuple[dict[str, Any], float]:
    return _search_fallback(ctx, "flight")


def hotel_search_fallback(ctx: FallbackContext) -> tuple[dict[str, Any], float]:
    return _search_fallback(ctx, "hotel")


def location_search_fallback(ctx: FallbackContext) -> tuple[dict[str, Any], float]:
    return _search_fallback(ctx, "location")


def refinement_fallback(ctx: FallbackContext) -> tuple[dict[str, Any], float]:
    """The itinerary as it was before the refinement."""
    if ctx.stale is not None:
        return ctx.stale, STALE_ITINERARY_CONFIDENCE

    params: ItineraryRefinementRequest = ctx.request
    itinerary = copy.deepcopy(params.itinerary)
    metadata = itinerary.setdefault("generationMetadata", {})
    metadata["refinementType"] = params.refinement_type
    metadata["refinementStatus"] = "unchanged"
    return itinerary, UNCHANGED_ITINERARY_CONFIDENCE


def activity_suggestions_fallback(ctx: FallbackContext) -> tuple[dict[str, Any], float]:
    """One generic suggestion per interest."""
    if ctx.stale is not None:
        return ctx.stale, STALE_SUGGESTIONS_CONFIDENCE

    params: ActivitySuggestionRequest = ctx.request
    interests = params.interests or ["sightseeing", "food", "culture"]
    per_activity = round(params.budget / len(interests), 2)
    activities = [
        {
            "name": f"{interest.title()} in {params.destination}",
            "description": f"Ask locally for well-reviewed {interest} options",
            "category": interest,
            "estimatedCost": per_activity,
            "duration": 120,
        }
        for interest in interests
    ]
    return (
        {
            "activities": activities,
            "generationMetadata": {"model": "fallback-template", "tokensUsed": 0},
        },
        GENERIC_SUGGESTIONS_CONFIDENCE,
    )


def register_default_fallbacks(registry: FallbackRegistry) -> FallbackRegistry:
    """Register the travel fallbacks on a registry."""
    registry.register("generate_itinerary", itinerary_fallback)
    registry.register("search_flights", flight_search_fallback)
    registry.register("search_hotels", hotel_search_fallback)
    registry.register("search_locations", location_search_fallback)
    registry.register("refine_itinerary", refinement_fallback)
    registry.register("suggest_activities", activity_suggestions_fallback)
    return registry
