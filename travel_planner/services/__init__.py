"""
Service layer infrastructure - resilience patterns for external dependencies.

Provides:
- CircuitBreaker: Stops calling a failing dependency for a cooldown period
- RetryExecutor: Bounded retries with capped exponential backoff
- ResponseCache: Cache-aside with TTL and stale reads for fallbacks
- FallbackRegistry: Degraded results when the primary path fails
- DependencyHealthGraph: Health per dependency with cascading degradation
- HealthMonitor: Scheduled, time-bounded health checks feeding the graph
- ResiliencePipeline: One dependency's full protected call path
"""

from travel_planner.services.errors import (
    ErrorKind,
    ServiceError,
    ValidationError,
    NotFoundError,
    RateLimitError,
    TransientNetworkError,
    ServiceUnavailableError,
    PermanentServiceError,
    BreakerOpenError,
    OperationTimeoutError,
    UpstreamUnavailableError,
    CacheError,
)
from travel_planner.services.config import (
    DependencyDescriptor,
    DependencyEdge,
    ResilienceConfig,
)
from travel_planner.services.cache import (
    CacheBackend,
    CacheEntry,
    CacheResult,
    MemoryCacheBackend,
    ResponseCache,
)
from travel_planner.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from travel_planner.services.retry import RetryAttempt, RetryExecutor, RetryPolicy
from travel_planner.services.fallback import (
    FallbackContext,
    FallbackRegistry,
    FallbackResult,
    OperationResult,
    Provenance,
)
from travel_planner.services.health import (
    DependencyHealthGraph,
    HealthMonitor,
    HealthRecord,
    HealthState,
)
from travel_planner.services.pipeline import ResiliencePipeline

__all__ = [
    # Errors
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "RateLimitError",
    "TransientNetworkError",
    "ServiceUnavailableError",
    "PermanentServiceError",
    "BreakerOpenError",
    "OperationTimeoutError",
    "UpstreamUnavailableError",
    "CacheError",
    # Config
    "DependencyDescriptor",
    "DependencyEdge",
    "ResilienceConfig",
    # Cache
    "CacheBackend",
    "CacheEntry",
    "CacheResult",
    "MemoryCacheBackend",
    "ResponseCache",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Retry
    "RetryAttempt",
    "RetryExecutor",
    "RetryPolicy",
    # Fallback
    "FallbackContext",
    "FallbackRegistry",
    "FallbackResult",
    "OperationResult",
    "Provenance",
    # Health
    "DependencyHealthGraph",
    "HealthMonitor",
    "HealthRecord",
    "HealthState",
    # Pipeline
    "ResiliencePipeline",
]
