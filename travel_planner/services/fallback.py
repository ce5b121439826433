"""
FallbackRegistry - Degraded-but-usable results when the primary path fails.

A generator is registered per operation name. It receives a FallbackContext
and returns either a payload or a (payload, confidence) tuple. Generators must
not call the protected dependency; they build synthetic content or reuse stale
cached data.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

from loguru import logger

T = TypeVar("T")

PRIMARY_CONFIDENCE = 1.0
DEFAULT_FALLBACK_CONFIDENCE = 0.5
MAX_FALLBACK_CONFIDENCE = 0.99


class Provenance(str, Enum):
    """Where a result came from."""

    PRIMARY = "primary"
    CACHE = "cache"
    FALLBACK = "fallback"


@dataclass
class OperationResult(Generic[T]):
    """Result of an orchestrated operation."""

    data: T
    operation: str
    service_id: str
    provenance: Provenance = Provenance.PRIMARY
    confidence: float = PRIMARY_CONFIDENCE
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_fallback(self) -> bool:
        return self.provenance == Provenance.FALLBACK

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "operation": self.operation,
            "service_id": self.service_id,
            "provenance": self.provenance.value,
            "confidence": self.confidence,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class FallbackResult(OperationResult[T]):
    """Degraded result produced by a fallback generator."""

    provenance: Provenance = Provenance.FALLBACK
    confidence: float = DEFAULT_FALLBACK_CONFIDENCE
    reason: str = ""  # ErrorKind value of the failure that triggered it
    from_stale_cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        data["from_stale_cache"] = self.from_stale_cache
        return data


@dataclass
class FallbackContext:
    """Everything a fallback generator may use."""

    operation: str
    service_id: str
    request: Any
    error: Exception
    stale: Any | None = None  # Expired cached value for the same request, if any


FallbackGenerator = Callable[
    [FallbackContext], Union[Any, tuple[Any, float], Awaitable[Any]]
]


class FallbackRegistry:
    """
    Mapping from operation name to fallback generator.

    Usage:
        registry = FallbackRegistry()
        registry.register("search_flights", lambda ctx: ({"offers": []}, 0.2))

        result = await registry.invoke(context)
    """

    def __init__(self) -> None:
        self._generators: dict[str, FallbackGenerator] = {}
        self._invocations: dict[str, int] = {}

    def register(self, operation: str, generator: FallbackGenerator) -> None:
        """Register (or replace) the fallback for an operation."""
        self._generators[operation] = generator
        logger.debug(f"Registered fallback for operation: {operation}")

    def has(self, operation: str) -> bool:
        return operation in self._generators

    async def invoke(self, context: FallbackContext) -> FallbackResult[Any]:
        """
        Produce a FallbackResult for a failed operation.

        Raises:
            The original error (context.error) if no fallback is registered
            or the generator itself fails.
        """
        generator = self._generators.get(context.operation)
        if generator is None:
            raise context.error

        try:
            produced = generator(context)
            if inspect.isawaitable(produced):
                produced = await produced
        except Exception as e:
            logger.error(f"Fallback for '{context.operation}' failed: {e}")
            raise context.error from e

        payload, confidence = self._unpack(produced)
        self._invocations[context.operation] = self._invocations.get(context.operation, 0) + 1

        reason = getattr(getattr(context.error, "kind", None), "value", type(context.error).__name__)
        logger.warning(
            f"Serving fallback for '{context.operation}' "
            f"(reason: {reason}, confidence: {confidence:.2f})"
        )
        return FallbackResult(
            data=payload,
            operation=context.operation,
            service_id=context.service_id,
            confidence=confidence,
            reason=reason,
            from_stale_cache=context.stale is not None and payload is context.stale,
        )

    @staticmethod
    def _unpack(produced: Any) -> tuple[Any, float]:
        if (
            isinstance(produced, tuple)
            and len(produced) == 2
            and isinstance(produced[1], (int, float))
        ):
            payload, confidence = produced
        else:
            payload, confidence = produced, DEFAULT_FALLBACK_CONFIDENCE
        # A fallback never claims primary-level confidence
        confidence = max(0.0, min(float(confidence), MAX_FALLBACK_CONFIDENCE))
        return payload, confidence

    def get_stats(self) -> dict[str, Any]:
        return {
            "registered": sorted(self._generators),
            "invocations": dict(self._invocations),
        }
