"""
Read-through cache wrapper.

``cache_read`` is the entry point every route uses: check the store, and on a
miss call the loader (the system of record), populate the store and return
the loader's result. Store problems only ever cost a cache hit; loader
failures propagate to the caller untouched and are never cached.
"""

import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger

from .keys import KindLike, derive_key, kind_name
from .store import CacheStore
from .ttl_policy import TTLPolicy

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Loader = Callable[[], Awaitable[Any]]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(value: datetime) -> str:
    """Format datetime values as ISO-8601 strings with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    """Parse ISO timestamp strings safely."""
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    """A cached value together with its store and expiry times."""

    key: str
    value: Any
    cached_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "cached_at": format_iso(self.cached_at),
            "expires_at": format_iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, key: str, payload: Any) -> Optional["CacheEntry"]:
        """Rehydrate an entry; None when the payload is not an envelope."""
        if not isinstance(payload, dict) or "value" not in payload:
            return None
        cached_at = parse_iso(payload.get("cached_at", ""))
        expires_at = parse_iso(payload.get("expires_at", ""))
        if cached_at is None or expires_at is None:
            return None
        return cls(key=key, value=payload["value"], cached_at=cached_at, expires_at=expires_at)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheReadResult:
    """Outcome of a read-through lookup."""

    key: str
    value: Any
    hit: bool
    cached_at: Optional[datetime] = None


class ReadThroughCache:
    """Cache-aside reads over a :class:`CacheStore`."""

    def __init__(
        self,
        store: CacheStore,
        ttl_policy: Optional[TTLPolicy] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
        coalesce: bool = False,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.ttl_policy = ttl_policy or TTLPolicy()
        self.metrics = metrics
        self.coalesce = coalesce
        self.logger = get_logger("videos.cache.read_through")
        self._clock = clock
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        self._stats: Dict[str, Dict[str, int]] = {}

    async def cache_read(
        self,
        kind: KindLike,
        identity_or_params: Any,
        loader: Loader,
        ttl_override: Optional[int] = None,
    ) -> Any:
        """Return the cached value for the resource, loading it on a miss."""
        key = derive_key(kind, identity_or_params)
        result = await self.read(key, kind, loader, ttl=self.ttl_policy.ttl_for(kind, ttl_override))
        return result.value

    async def read(
        self,
        key: str,
        kind: KindLike,
        loader: Loader,
        ttl: Optional[int] = None,
    ) -> CacheReadResult:
        """Read ``key`` through the cache and report whether it was a hit."""
        cache_type = kind_name(kind)
        ttl = ttl if ttl is not None else self.ttl_policy.ttl_for(kind)

        entry = await self.lookup(key)
        if entry is not None:
            self._record(cache_type, hit=True)
            return CacheReadResult(key=key, value=entry.value, hit=True, cached_at=entry.cached_at)

        self._record(cache_type, hit=False)
        if self.coalesce:
            value = await self._load_coalesced(key, cache_type, loader, ttl)
        else:
            value = await self._load_and_populate(key, cache_type, loader, ttl)
        return CacheReadResult(key=key, value=value, hit=False)

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        """Fetch a fresh entry for ``key`` or None."""
        payload = await self.store.get(key)
        if payload is None:
            return None

        entry = CacheEntry.from_dict(key, payload)
        if entry is None:
            self.logger.warning("Ignoring cache payload without envelope", key=key)
            return None
        if entry.is_expired(self._clock()):
            await self.store.delete(key)
            return None
        return entry

    async def populate(self, key: str, value: Any, ttl: int) -> bool:
        """Store ``value`` under ``key``; failures are logged, never raised."""
        now = self._clock()
        entry = CacheEntry(key=key, value=value, cached_at=now, expires_at=now + timedelta(seconds=ttl))
        stored = await self.store.set_with_expiry(key, entry.to_dict(), ttl)
        if stored:
            self.logger.debug("Cached value", key=key, ttl=ttl)
        elif self.store.connected:
            self.logger.info("Cache populate skipped", key=key)
        return stored

    async def _load_and_populate(self, key: str, cache_type: str, loader: Loader, ttl: int) -> Any:
        if self.metrics:
            with self.metrics.time_operation("cache_loader_duration_seconds", cache_type=cache_type):
                value = await loader()
        else:
            value = await loader()

        # No negative caching: a missing resource is looked up again next time.
        if value is not None:
            await self.populate(key, value, ttl)
        return value

    async def _load_coalesced(self, key: str, cache_type: str, loader: Loader, ttl: int) -> Any:
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load_and_populate(key, cache_type, loader, ttl))
            self._inflight[key] = pending
            pending.add_done_callback(functools.partial(self._settle_inflight, key))
        return await asyncio.shield(pending)

    def _settle_inflight(self, key: str, future: "asyncio.Future[Any]") -> None:
        self._inflight.pop(key, None)
        # Mark the outcome retrieved even when every waiter was cancelled.
        if not future.cancelled():
            future.exception()

    def _record(self, cache_type: str, *, hit: bool) -> None:
        counters = self._stats.setdefault(cache_type, {"hits": 0, "misses": 0})
        counters["hits" if hit else "misses"] += 1
        self.logger.debug("Cache hit" if hit else "Cache miss", cache_type=cache_type)
        if self.metrics:
            self.metrics.record_cache_access(cache_type, hit)

    def stats(self) -> Dict[str, Any]:
        """In-process hit/miss counters per resource kind."""
        hits = sum(counters["hits"] for counters in self._stats.values())
        misses = sum(counters["misses"] for counters in self._stats.values())
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_ratio": hits / total if total else 0.0,
            "by_kind": {kind: dict(counters) for kind, counters in self._stats.items()},
        }

    def cache_health(self) -> Dict[str, bool]:
        return {"connected": self.store.connected}
