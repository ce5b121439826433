"""
ResponseCache - Cache-aside layer in front of the breaker/retry stack.

Features:
- Deterministic request fingerprints (stable key order, case-folded values)
- TTL with lazy expiry on read: an entry older than its TTL is never a hit
- Expired entries linger until stale_until so fallbacks can reuse them
- Pluggable backend; backend failures are logged and degrade to a miss
- Values are copied in and out, so callers never share a cached object
"""

import asyncio
import copy
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger
from pydantic import BaseModel

from travel_planner.services.errors import CacheError

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: str
    data: T
    inserted_at: datetime
    ttl: timedelta
    stale_until: datetime

    def is_expired(self, now: datetime) -> bool:
        """Check if entry is past its TTL."""
        return now - self.inserted_at > self.ttl

    def is_usable_stale(self, now: datetime) -> bool:
        """Check if an expired entry may still feed a fallback."""
        return now <= self.stale_until


@dataclass
class CacheResult(Generic[T]):
    """Result from cache lookup."""

    data: T
    inserted_at: datetime
    age_seconds: float


class CacheBackend(ABC):
    """Storage behind the ResponseCache. Implementations may raise CacheError."""

    @abstractmethod
    async def get(self, key: str) -> CacheEntry[Any] | None: ...

    @abstractmethod
    async def set(self, entry: CacheEntry[Any]) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def clear(self) -> int: ...

    @abstractmethod
    def size(self) -> int: ...


class MemoryCacheBackend(CacheBackend):
    """In-process dict backend with oldest-first eviction."""

    def __init__(self, max_size: int = 500):
        self._memory: dict[str, CacheEntry[Any]] = {}
        self._max_size = max_size
        self._lock = asyncio.Lock()
        self.evictions = 0

    async def get(self, key: str) -> CacheEntry[Any] | None:
        async with self._lock:
            return self._memory.get(key)

    async def set(self, entry: CacheEntry[Any]) -> None:
        async with self._lock:
            if len(self._memory) >= self._max_size and entry.key not in self._memory:
                self._evict_oldest()
            # Last write wins
            self._memory[entry.key] = entry

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._memory.pop(key, None) is not None

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            return count

    def size(self) -> int:
        return len(self._memory)

    def _evict_oldest(self) -> None:
        if not self._memory:
            return

        oldest_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].inserted_at,
        )
        del self._memory[oldest_key]
        self.evictions += 1


def _normalize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, str):
        return value.strip().casefold()
    if isinstance(value, (datetime, timedelta)):
        return str(value)
    return value


class ResponseCache:
    """
    Cache-aside response cache.

    Usage:
        cache = ResponseCache()
        key = cache.fingerprint("search_flights", request)

        hit = await cache.get(key)
        if hit:
            return hit.data

        data = await protected_call()
        await cache.set(key, data, ttl=timedelta(minutes=15))
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        prefix: str = "tp_",
        max_size: int = 500,
        timeout: float = 2.0,
        stale_factor: int = 2,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._backend = backend or MemoryCacheBackend(max_size=max_size)
        self._prefix = prefix
        self._timeout = timeout
        self._stale_factor = stale_factor
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats(max_size=max_size)

    def fingerprint(self, operation: str, request: Any) -> str:
        """Generate a deterministic cache key for an operation request."""
        normalized = json.dumps(
            _normalize(request), sort_keys=True, separators=(",", ":"), default=str
        )
        digest = hashlib.sha256(normalized.encode()).hexdigest()[:32]
        return f"{self._prefix}{operation}:{digest}"

    async def get(self, key: str) -> CacheResult[Any] | None:
        """
        Get a fresh value from cache.

        Returns CacheResult if found and within TTL, None otherwise
        (including when the backend fails).
        """
        entry = await self._read(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key}")
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._stats.misses += 1
            self._log(f"EXPIRED: {key}")
            if not entry.is_usable_stale(now):
                await self._guard("delete", self._backend.delete(key))
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key}")
        return CacheResult(
            data=copy.deepcopy(entry.data),
            inserted_at=entry.inserted_at,
            age_seconds=(now - entry.inserted_at).total_seconds(),
        )

    async def get_stale(self, key: str) -> Any | None:
        """Get an expired-but-retained value, for fallback generators only."""
        entry = await self._read(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.is_expired(now) and entry.is_usable_stale(now):
            self._stats.stale_reads += 1
            self._log(f"STALE READ: {key}")
            return copy.deepcopy(entry.data)
        return None

    async def set(self, key: str, data: Any, ttl: timedelta) -> None:
        """Store a copy of a value. Backend failures are logged and swallowed."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            data=copy.deepcopy(data),
            inserted_at=now,
            ttl=ttl,
            stale_until=now + ttl * self._stale_factor,
        )
        if await self._guard("set", self._backend.set(entry), default=False) is not False:
            self._log(f"SET: {key} (TTL: {ttl.total_seconds()}s)")

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        return bool(await self._guard("delete", self._backend.delete(key), default=False))

    async def clear(self) -> int:
        """Clear all cache entries."""
        count = await self._guard("clear", self._backend.clear(), default=0)
        self._log(f"CLEAR: {count} entries removed")
        return count

    async def ping(self) -> bool:
        """Read a sentinel key to check the backend answers in time. Raises on failure."""
        try:
            await asyncio.wait_for(self._backend.get(f"{self._prefix}__ping__"), self._timeout)
        except asyncio.TimeoutError as e:
            raise CacheError(f"cache ping timed out after {self._timeout}s") from e
        return True

    async def _read(self, key: str) -> CacheEntry[Any] | None:
        return await self._guard("get", self._backend.get(key))

    async def _guard(self, action: str, awaitable: Any, default: Any = None) -> Any:
        """Run a backend call, turning any failure into a logged bypass."""
        try:
            try:
                return await asyncio.wait_for(awaitable, timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise CacheError(f"cache {action} timed out after {self._timeout}s") from e
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"[ResponseCache] backend {action} failed, bypassing cache: {e}")
            return default

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = self._backend.size()
        if isinstance(self._backend, MemoryCacheBackend):
            self._stats.evictions = self._backend.evictions
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ResponseCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_reads: int = 0
    errors: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_reads": self.stale_reads,
            "errors": self.errors,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
