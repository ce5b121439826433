import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from travel_planner.services.config import (
    DependencyDescriptor,
    DependencyEdge,
    ResilienceConfig,
)

load_dotenv()


def _parse_edges(value: str) -> tuple[DependencyEdge, ...]:
    """Parse "upstream>dependent,upstream>dependent" into edges."""
    edges = []
    for pair in filter(None, (p.strip() for p in value.split(","))):
        upstream, sep, dependent = pair.partition(">")
        if not sep or not upstream.strip() or not dependent.strip():
            raise ValueError(f"Invalid dependency edge: {pair!r}")
        edges.append(DependencyEdge(upstream=upstream.strip(), dependent=dependent.strip()))
    return tuple(edges)


class Settings(BaseModel):
    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    # Anthropic Configuration
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str | None = Field(default=None, alias="ANTHROPIC_BASE_URL")
    anthropic_model: str = Field(default="claude-3-5-sonnet-latest", alias="ANTHROPIC_MODEL")
    anthropic_max_tokens: int = Field(default=4000, alias="ANTHROPIC_MAX_TOKENS")
    anthropic_temperature: float = Field(default=0.7, alias="ANTHROPIC_TEMPERATURE")
    anthropic_timeout: float = Field(default=60.0, alias="ANTHROPIC_TIMEOUT")

    # Amadeus Configuration
    amadeus_client_id: str = Field(default="", alias="AMADEUS_CLIENT_ID")
    amadeus_client_secret: str = Field(default="", alias="AMADEUS_CLIENT_SECRET")
    amadeus_environment: str = Field(default="test", alias="AMADEUS_ENVIRONMENT")
    amadeus_timeout: float = Field(default=30.0, alias="AMADEUS_TIMEOUT")

    # Circuit Breaker Configuration
    breaker_failure_threshold: int = Field(default=5, alias="BREAKER_FAILURE_THRESHOLD")
    breaker_cooldown_seconds: float = Field(default=30.0, alias="BREAKER_COOLDOWN_SECONDS")

    # Retry Configuration
    ai_max_retries: int = Field(default=2, alias="AI_MAX_RETRIES")
    search_max_retries: int = Field(default=3, alias="AMADEUS_RETRIES")
    retry_base_delay_seconds: float = Field(default=0.5, alias="RETRY_BASE_DELAY")
    retry_cap_delay_seconds: float = Field(default=10.0, alias="RETRY_CAP_DELAY")

    # Cache Configuration (TTL in seconds)
    itinerary_cache_ttl: int = Field(default=3600, alias="ITINERARY_CACHE_TTL")
    flight_cache_ttl: int = Field(default=900, alias="FLIGHT_CACHE_TTL")
    hotel_cache_ttl: int = Field(default=1800, alias="HOTEL_CACHE_TTL")
    location_cache_ttl: int = Field(default=86400, alias="LOCATION_CACHE_TTL")
    cache_max_size: int = Field(default=500, alias="CACHE_MAX_SIZE")
    cache_timeout: float = Field(default=2.0, alias="CACHE_TIMEOUT")

    # Orchestration
    operation_deadline: float = Field(default=90.0, alias="OPERATION_DEADLINE")
    # Comma separated "upstream>dependent" pairs
    dependency_edges: str = Field(
        default="amadeus_auth>flight_search,amadeus_auth>hotel_search,amadeus_auth>location_search",
        alias="DEPENDENCY_EDGES",
    )
    # Dependencies tracked for health without a breaker, fed by health checks
    passive_dependencies: str = Field(
        default="amadeus_auth,cache_store", alias="PASSIVE_DEPENDENCIES"
    )

    # Health Checks
    health_check_interval: float = Field(default=60.0, alias="HEALTH_CHECK_INTERVAL")
    health_check_timeout: float = Field(default=5.0, alias="HEALTH_CHECK_TIMEOUT")
    health_unhealthy_after: int = Field(default=2, alias="HEALTH_UNHEALTHY_AFTER")

    @property
    def amadeus_base_url(self) -> str:
        if self.amadeus_environment == "production":
            return "https://api.amadeus.com"
        return "https://test.api.amadeus.com"

    def build_resilience_config(self) -> ResilienceConfig:
        """Build the immutable resilience configuration used at startup."""
        common = dict(
            failure_threshold=self.breaker_failure_threshold,
            cooldown=timedelta(seconds=self.breaker_cooldown_seconds),
            base_delay=timedelta(seconds=self.retry_base_delay_seconds),
            cap_delay=timedelta(seconds=self.retry_cap_delay_seconds),
        )
        return ResilienceConfig(
            dependencies=(
                DependencyDescriptor(
                    service_id="ai_generation",
                    max_retries=self.ai_max_retries,
                    cache_ttl=timedelta(seconds=self.itinerary_cache_ttl),
                    timeout=self.anthropic_timeout,
                    critical=True,
                    **common,
                ),
                DependencyDescriptor(
                    service_id="flight_search",
                    max_retries=self.search_max_retries,
                    cache_ttl=timedelta(seconds=self.flight_cache_ttl),
                    timeout=self.amadeus_timeout,
                    **common,
                ),
                DependencyDescriptor(
                    service_id="hotel_search",
                    max_retries=self.search_max_retries,
                    cache_ttl=timedelta(seconds=self.hotel_cache_ttl),
                    timeout=self.amadeus_timeout,
                    **common,
                ),
                DependencyDescriptor(
                    service_id="location_search",
                    max_retries=self.search_max_retries,
                    cache_ttl=timedelta(seconds=self.location_cache_ttl),
                    timeout=self.amadeus_timeout,
                    **common,
                ),
            ),
            edges=_parse_edges(self.dependency_edges),
            passive_dependencies=tuple(
                p.strip() for p in self.passive_dependencies.split(",") if p.strip()
            ),
            operation_deadline=self.operation_deadline,
            cache_timeout=self.cache_timeout,
            cache_max_size=self.cache_max_size,
            health_check_interval=self.health_check_interval,
            health_check_timeout=self.health_check_timeout,
            unhealthy_after_failures=self.health_unhealthy_after,
        )


global_settings = Settings(**os.environ)
