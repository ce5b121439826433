"""
Request models for the travel operations exposed by the orchestrator.
"""

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class Travelers(BaseModel):
    """Traveler composition."""

    adults: int = Field(default=1, ge=1, le=9)
    children: int = Field(default=0, ge=0, le=9)


class Budget(BaseModel):
    """Overall trip budget."""

    total: float = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class ItineraryRequest(BaseModel):
    """Parameters for AI itinerary generation."""

    destination: str = Field(min_length=2, max_length=120)
    start_date: date
    end_date: date
    travelers: Travelers = Field(default_factory=Travelers)
    budget: Budget
    interests: list[str] = Field(default_factory=list)
    pace: Literal["relaxed", "moderate", "fast"] = "moderate"
    must_visit: list[str] = Field(default_factory=list)
    avoid_areas: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_dates(self) -> "ItineraryRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.duration > 30:
            raise ValueError("itineraries are limited to 30 days")
        return self

    @property
    def duration(self) -> int:
        return (self.end_date - self.start_date).days + 1


class FlightSearchRequest(BaseModel):
    """Parameters for a flight offers search."""

    origin: str = Field(pattern=r"^[A-Za-z]{3}$")
    destination: str = Field(pattern=r"^[A-Za-z]{3}$")
    departure_date: date
    return_date: date | None = None
    adults: int = Field(default=1, ge=1, le=9)
    children: int = Field(default=0, ge=0, le=9)
    infants: int = Field(default=0, ge=0, le=9)
    travel_class: Literal["ECONOMY", "PREMIUM_ECONOMY", "BUSINESS", "FIRST"] = "ECONOMY"
    non_stop: bool | None = None
    max_price: int | None = Field(default=None, gt=0)
    max_results: int = Field(default=50, ge=1, le=250)
    currency_code: str = Field(default="USD", min_length=3, max_length=3)

    @model_validator(mode="after")
    def _check_dates(self) -> "FlightSearchRequest":
        if self.return_date and self.return_date < self.departure_date:
            raise ValueError("return_date must not be before departure_date")
        if self.origin.upper() == self.destination.upper():
            raise ValueError("origin and destination must differ")
        return self


class HotelSearchRequest(BaseModel):
    """Parameters for a hotel offers search."""

    city_code: str = Field(pattern=r"^[A-Za-z]{3}$")
    check_in_date: date
    check_out_date: date
    room_quantity: int = Field(default=1, ge=1, le=9)
    adults: int = Field(default=1, ge=1, le=9)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @model_validator(mode="after")
    def _check_dates(self) -> "HotelSearchRequest":
        if self.check_out_date <= self.check_in_date:
            raise ValueError("check_out_date must be after check_in_date")
        return self

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days


class TripPlanRequest(BaseModel):
    """One user request fanning out to several dependencies."""

    itinerary: ItineraryRequest
    flights: FlightSearchRequest | None = None
    hotels: HotelSearchRequest | None = None


class ItineraryRefinementRequest(BaseModel):
    """Change request for an itinerary generated earlier."""

    itinerary: dict[str, Any]
    refinement_type: Literal[
        "modify_activity", "change_budget", "adjust_pace", "add_preferences"
    ]
    details: dict[str, Any] = Field(default_factory=dict)
    user_feedback: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _check_itinerary(self) -> "ItineraryRefinementRequest":
        if not isinstance(self.itinerary.get("dailyItinerary"), list):
            raise ValueError("itinerary must contain a dailyItinerary list")
        return self


class ActivitySuggestionRequest(BaseModel):
    """Parameters for AI activity suggestions at a destination."""

    destination: str = Field(min_length=2, max_length=120)
    interests: list[str] = Field(default_factory=list)
    budget: float = Field(ge=0)
    duration: int = Field(ge=1, le=30)


class LocationSearchRequest(BaseModel):
    """Airport and city lookup by keyword."""

    keyword: str = Field(min_length=2, max_length=60)
    sub_type: Literal["AIRPORT", "CITY", "AIRPORT,CITY"] = "AIRPORT"
    max_results: int = Field(default=10, ge=1, le=50)
