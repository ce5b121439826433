"""
Amadeus Self-Service API adapters for flight, hotel and location search.

API Documentation: https://developers.amadeus.com/self-service
Authentication uses the OAuth2 client-credentials grant; the access token is
shared by the adapters and refreshed shortly before it expires, or as soon as
a search is rejected with 401.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from loguru import logger

from travel_planner.datasource.base import HttpServiceAdapter
from travel_planner.models import (
    FlightSearchRequest,
    HotelSearchRequest,
    LocationSearchRequest,
)
from travel_planner.services.errors import PermanentServiceError, ServiceError

TEST_BASE_URL = "https://test.api.amadeus.com"
PRODUCTION_BASE_URL = "https://api.amadeus.com"


class AmadeusAuth(HttpServiceAdapter[None, str]):
    """Fetches and caches the Amadeus OAuth2 access token."""

    # Refresh this long before the token actually expires
    EXPIRY_MARGIN = timedelta(seconds=60)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = TEST_BASE_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(base_url, timeout=timeout, http_client=http_client)
        self.client_id = client_id
        self.client_secret = client_secret
        self._clock = clock
        self._token: str | None = None
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def service_id(self) -> str:
        return "amadeus_auth"

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def call(self, request: None = None) -> str:
        """Return a valid access token, fetching a new one if needed."""
        async with self._lock:
            if self._token and self._expires_at and self._clock() < self._expires_at:
                return self._token
            return await self._fetch_token()

    async def health_check(self) -> bool:
        """Run the client-credentials grant; a granted token means healthy."""
        if not self.is_configured():
            return False
        async with self._lock:
            await self._fetch_token()
        return True

    def invalidate(self, token: str | None = None) -> None:
        """Drop the cached token, or only `token` if it is still the cached one."""
        if token is not None and token != self._token:
            return
        self._token = None
        self._expires_at = None
        logger.info("Amadeus access token invalidated")

    async def _fetch_token(self) -> str:
        body = await self._send(
            "POST",
            "/v1/security/oauth2/token",
            form_data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise PermanentServiceError(
                "Token response missing access_token", service_id=self.service_id
            )

        expires_in = int(body.get("expires_in", 1799))
        self._token = token
        self._expires_at = self._clock() + timedelta(seconds=expires_in) - self.EXPIRY_MARGIN
        logger.debug(f"Fetched Amadeus access token (expires in {expires_in}s)")
        return token


class _AmadeusSearchAdapter(HttpServiceAdapter[Any, dict[str, Any]]):
    """Shared plumbing for the Amadeus search endpoints."""

    SERVICE_ID = ""

    def __init__(
        self,
        auth: AmadeusAuth,
        base_url: str = TEST_BASE_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(base_url, timeout=timeout, http_client=http_client)
        self.auth = auth

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return self.auth.is_configured()

    async def close(self) -> None:
        await super().close()
        await self.auth.close()

    async def _token(self) -> str:
        try:
            return await self.auth.call()
        except ServiceError as e:
            # Token failures belong to the dependency that needed the token
            e.service_id = self.service_id
            raise

    async def _search(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        query = {k: v for k, v in params.items() if v is not None}
        token = await self._token()

        try:
            body = await self._send(
                "GET", path, params=query, headers={"Authorization": f"Bearer {token}"}
            )
        except ServiceError as e:
            if e.status_code != 401:
                raise
            # Token revoked before its expiry: retry once with a fresh one
            logger.warning(f"Amadeus rejected the access token for '{self.service_id}'")
            self.auth.invalidate(token)
            token = await self._token()
            try:
                body = await self._send(
                    "GET", path, params=query, headers={"Authorization": f"Bearer {token}"}
                )
            except ServiceError as retry_error:
                if retry_error.status_code == 401:
                    self.auth.invalidate(token)
                raise

        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise PermanentServiceError(
                "Search response missing 'data' list", service_id=self.service_id
            )
        return {
            "data": body["data"],
            "meta": body.get("meta", {}),
            "dictionaries": body.get("dictionaries", {}),
        }


class AmadeusFlightAdapter(_AmadeusSearchAdapter):
    """Flight offers search."""

    SERVICE_ID = "flight_search"

    async def call(self, request: FlightSearchRequest) -> dict[str, Any]:
        return await self._search(
            "/v2/shopping/flight-offers",
            {
                "originLocationCode": request.origin.upper(),
                "destinationLocationCode": request.destination.upper(),
                "departureDate": request.departure_date.isoformat(),
                "returnDate": request.return_date.isoformat() if request.return_date else None,
                "adults": request.adults,
                "children": request.children or None,
                "infants": request.infants or None,
                "travelClass": request.travel_class,
                "nonStop": str(request.non_stop).lower() if request.non_stop is not None else None,
                "maxPrice": request.max_price,
                "max": request.max_results,
                "currencyCode": request.currency_code.upper(),
            },
        )


class AmadeusHotelAdapter(_AmadeusSearchAdapter):
    """Hotel offers search by city."""

    SERVICE_ID = "hotel_search"

    async def call(self, request: HotelSearchRequest) -> dict[str, Any]:
        return await self._search(
            "/v2/shopping/hotel-offers",
            {
                "cityCode": request.city_code.upper(),
                "checkInDate": request.check_in_date.isoformat(),
                "checkOutDate": request.check_out_date.isoformat(),
                "roomQuantity": request.room_quantity,
                "adults": request.adults,
                "currency": request.currency.upper(),
            },
        )


class AmadeusLocationAdapter(_AmadeusSearchAdapter):
    """Airport and city lookup by keyword."""

    SERVICE_ID = "location_search"

    async def call(self, request: LocationSearchRequest) -> dict[str, Any]:
        return await self._search(
            "/v1/reference-data/locations",
            {
                "keyword": request.keyword.strip().upper(),
                "subType": request.sub_type,
                "page[limit]": request.max_results,
            },
        )
