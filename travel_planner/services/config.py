"""
Immutable resilience configuration, created once at process start.
"""

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(frozen=True)
class DependencyDescriptor:
    """Resilience settings for one external dependency."""

    service_id: str
    failure_threshold: int = 5  # Consecutive failures before opening
    cooldown: timedelta = timedelta(seconds=30)  # Time before half-open
    max_retries: int = 3  # Additional attempts after the first
    base_delay: timedelta = timedelta(seconds=0.5)
    cap_delay: timedelta = timedelta(seconds=10)
    cache_ttl: timedelta = timedelta(hours=1)
    timeout: float = 30.0  # Per-attempt HTTP timeout in seconds
    critical: bool = False  # Whether the dependency blocks a trip plan

    def __post_init__(self) -> None:
        if not self.service_id:
            raise ValueError("service_id must not be empty")
        if self.failure_threshold < 1:
            raise ValueError(
                f"{self.service_id}: failure_threshold must be >= 1, "
                f"got {self.failure_threshold}"
            )
        if self.max_retries < 0:
            raise ValueError(
                f"{self.service_id}: max_retries must be >= 0, got {self.max_retries}"
            )
        if self.base_delay < timedelta(0) or self.cap_delay < self.base_delay:
            raise ValueError(
                f"{self.service_id}: need 0 <= base_delay <= cap_delay"
            )
        if self.cooldown <= timedelta(0):
            raise ValueError(f"{self.service_id}: cooldown must be positive")
        if self.timeout <= 0:
            raise ValueError(f"{self.service_id}: timeout must be positive")


@dataclass(frozen=True)
class DependencyEdge:
    """Directed edge: failures of `upstream` degrade `dependent`."""

    upstream: str
    dependent: str


@dataclass(frozen=True)
class ResilienceConfig:
    """Everything the resilience core needs at startup."""

    dependencies: tuple[DependencyDescriptor, ...]
    edges: tuple[DependencyEdge, ...] = ()
    # Dependencies tracked by the health graph without a breaker (fed by health checks)
    passive_dependencies: tuple[str, ...] = ()
    operation_deadline: float = 60.0
    cache_timeout: float = 2.0
    cache_max_size: int = 500
    # Seconds between background health checks; 0 disables the schedule
    health_check_interval: float = 0.0
    health_check_timeout: float = 5.0
    unhealthy_after_failures: int = 2
    descriptors: dict[str, DependencyDescriptor] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        by_id: dict[str, DependencyDescriptor] = {}
        for descriptor in self.dependencies:
            if descriptor.service_id in by_id:
                raise ValueError(f"Duplicate dependency: {descriptor.service_id}")
            by_id[descriptor.service_id] = descriptor
        if self.operation_deadline <= 0:
            raise ValueError("operation_deadline must be positive")
        if self.health_check_interval < 0 or self.health_check_timeout <= 0:
            raise ValueError("health_check_interval must be >= 0 and health_check_timeout positive")
        object.__setattr__(self, "descriptors", by_id)

    def get(self, service_id: str) -> DependencyDescriptor:
        """Get the descriptor for a dependency."""
        try:
            return self.descriptors[service_id]
        except KeyError:
            raise KeyError(f"Unknown dependency: {service_id}") from None

    @property
    def all_dependency_ids(self) -> list[str]:
        ids = [d.service_id for d in self.dependencies]
        ids.extend(p for p in self.passive_dependencies if p not in self.descriptors)
        return ids
