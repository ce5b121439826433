"""
Service Client Adapters - one per external dependency.
"""

from travel_planner.datasource.base import HttpServiceAdapter, ServiceAdapter
from travel_planner.datasource.anthropic import AnthropicItineraryAdapter
from travel_planner.datasource.amadeus import (
    AmadeusAuth,
    AmadeusFlightAdapter,
    AmadeusHotelAdapter,
    AmadeusLocationAdapter,
)

__all__ = [
    "ServiceAdapter",
    "HttpServiceAdapter",
    "AnthropicItineraryAdapter",
    "AmadeusAuth",
    "AmadeusFlightAdapter",
    "AmadeusHotelAdapter",
    "AmadeusLocationAdapter",
]
