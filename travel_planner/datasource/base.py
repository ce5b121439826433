"""
Service Client Adapter contract.

An adapter wraps exactly one external dependency behind `call(request)`. It
knows nothing about retries, breakers or caching: it either returns a result
or raises a classified ServiceError.
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

import httpx
from loguru import logger

from travel_planner.services.errors import (
    PermanentServiceError,
    TransientNetworkError,
    classify_http_status,
    parse_retry_after,
)

RequestT = TypeVar("RequestT")
ResultT = TypeVar("ResultT")


class ServiceAdapter(ABC, Generic[RequestT, ResultT]):
    """
    Abstract base class for all service client adapters.

    All adapters should:
    - Expose a stable service_id (matching a DependencyDescriptor)
    - Raise ServiceError subclasses only, never raw transport exceptions
    - Treat an unparseable success payload as PermanentServiceError
    """

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for the wrapped dependency."""
        ...

    @abstractmethod
    async def call(self, request: RequestT) -> ResultT:
        """Perform one attempt against the dependency."""
        ...

    def is_configured(self) -> bool:
        """Check if the adapter has the credentials it needs."""
        return True

    async def health_check(self) -> bool:
        """
        Cheap liveness check used by the health monitor. Adapters that can
        reach their dependency without side effects override this; raising
        counts as a failed check.
        """
        return self.is_configured()

    async def close(self) -> None:
        """Release any held resources."""
        return None


class HttpServiceAdapter(ServiceAdapter[RequestT, ResultT]):
    """Adapter base for JSON-over-HTTP dependencies, built on httpx."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = headers or {}
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._http_client

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        form_data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Execute one HTTP request and decode its JSON body.

        Raises:
            TransientNetworkError: Timeouts and connection failures
            ServiceError: Classified HTTP error statuses
            PermanentServiceError: Success status with a non-JSON body
        """
        client = await self._get_http_client()
        req_headers = {**self._headers, **(headers or {})}
        url = f"{self.base_url}{path}"

        try:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                data=form_data,
                headers=req_headers,
                timeout=self.timeout,
            )
            response.raise_for_status()

        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                f"Request timed out after {self.timeout}s", service_id=self.service_id
            ) from e

        except httpx.HTTPStatusError as e:
            raise classify_http_status(
                e.response.status_code,
                service_id=self.service_id,
                detail=e.response.text,
                retry_after=parse_retry_after(e.response.headers.get("retry-after")),
            ) from e

        except httpx.TransportError as e:
            raise TransientNetworkError(str(e), service_id=self.service_id) from e

        try:
            return response.json()
        except ValueError as e:
            raise PermanentServiceError(
                f"Unparseable response body: {response.text[:200]}",
                service_id=self.service_id,
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug(f"Adapter '{self.service_id}' closed")

