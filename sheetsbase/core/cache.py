"""Query result cache with in-memory (default) or Redis backend.

Keys are partitioned by table: every key starts with ``"<table>:"`` so a
write to one table can drop exactly that table's cached queries.

The layer never invalidates on its own. Callers invalidate a table right
after a confirmed write; a reader racing between the write and the
invalidation may see one stale result.
"""

import asyncio
import functools
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TYPE_CHECKING

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    redis = None
    REDIS_AVAILABLE = False

from sheetsbase.core.config import Settings
from sheetsbase.core.errors import CacheUnavailable
from sheetsbase.core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from sheetsbase.models.query import QuerySpec

logger = get_logger(__name__)


def canonical_query(spec: "QuerySpec") -> Dict[str, Any]:
    """Semantic content of a query, independent of how it was built.

    Filters are AND-combined, so their order does not matter and they are
    sorted. Non-positive limits mean "no limit" and collapse to None.
    """
    filters = sorted(
        (f.to_dict() for f in spec.filters),
        key=lambda f: json.dumps(f, sort_keys=True, default=str),
    )
    return {
        "columns": spec.columns if spec.selects_all else list(spec.columns),
        "filters": filters,
        "order": spec.order.to_dict() if spec.order else None,
        "limit": spec.effective_limit,
    }


def derive_key(table: str, spec: "QuerySpec") -> str:
    """Generate cache key for a query.

    Format: ``{table}:{canonical JSON}`` (sorted keys, compact separators)
    """
    canonical = json.dumps(canonical_query(spec), sort_keys=True, separators=(",", ":"), default=str)
    return f"{table}:{canonical}"


def table_prefix(table: str) -> str:
    return f"{table}:"


class CacheBackend(Protocol):
    """Storage used by CacheLayer. Failures raise CacheUnavailable."""

    name: str

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: int) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_prefix(self, prefix: str) -> List[str]: ...

    async def clear(self) -> int: ...

    async def size(self) -> int: ...


class MemoryCacheBackend:
    """Process-local dict with per-entry expiry.

    Expired entries are dropped on read, on every scan, and by a sweep that
    runs from set() at most once per ``check_period`` seconds.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic, check_period: float = 60):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self.check_period = check_period
        self._next_sweep = clock() + check_period

    def _alive(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry[1] <= self._clock():
            del self._entries[key]
            return False
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def get(self, key: str) -> Optional[Any]:
        if not self._alive(key):
            return None
        return self._entries[key][0]

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        now = self._clock()
        if now >= self._next_sweep:
            self._next_sweep = now + self.check_period
            purged = self.purge_expired()
            if purged:
                logger.debug("Expired cache entries purged", count=purged)
        self._entries[key] = (value, now + ttl)
        return True

    async def delete(self, key: str) -> bool:
        alive = self._alive(key)
        if alive:
            del self._entries[key]
        return alive

    async def delete_prefix(self, prefix: str) -> List[str]:
        self.purge_expired()
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return keys

    async def clear(self) -> int:
        self.purge_expired()
        count = len(self._entries)
        self._entries.clear()
        return count

    async def size(self) -> int:
        self.purge_expired()
        return len(self._entries)


def _escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters."""
    return "".join("\\" + c if c in "*?[]\\" else c for c in text)


class RedisCacheBackend:
    """Redis-backed cache for multi-process deployments.

    Values are stored as JSON under ``{namespace}{key}`` with SETEX.
    """

    name = "redis"

    def __init__(self, url: str, namespace: str = "sheetsbase:", client: Any = None):
        if client is None:
            if not REDIS_AVAILABLE:
                raise CacheUnavailable("Redis backend requires the 'redis' package")
            client = redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
        self.redis = client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def _scan(self, prefix: str) -> List[str]:
        pattern = _escape_glob(self._key(prefix)) + "*"
        return [k async for k in self.redis.scan_iter(match=pattern)]

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.redis.get(self._key(key))
        except Exception as e:
            raise CacheUnavailable(f"Redis get failed: {e}", operation="get") from e
        return json.loads(value) if value is not None else None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            await self.redis.setex(self._key(key), ttl, json.dumps(value, default=str))
        except Exception as e:
            raise CacheUnavailable(f"Redis set failed: {e}", operation="set") from e
        return True

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.redis.delete(self._key(key)))
        except Exception as e:
            raise CacheUnavailable(f"Redis delete failed: {e}", operation="delete") from e

    async def delete_prefix(self, prefix: str) -> List[str]:
        try:
            keys = await self._scan(prefix)
            if keys:
                await self.redis.delete(*keys)
        except Exception as e:
            raise CacheUnavailable(f"Redis invalidate failed: {e}", operation="invalidate") from e
        return [k[len(self.namespace):] for k in keys]

    async def clear(self) -> int:
        return len(await self.delete_prefix(""))

    async def size(self) -> int:
        try:
            return len(await self._scan(""))
        except Exception as e:
            raise CacheUnavailable(f"Redis scan failed: {e}", operation="size") from e

    async def close(self):
        await self.redis.close()


class CacheLayer:
    """Read-through cache for query results.

    One instance is created at startup and injected wherever it is needed.

    Disabled mode (``cache_enabled=False``) behaves as a permanent miss:
    get() returns None, set() is a no-op and get_or_fill() always loads.
    Backend failures degrade the same way and are logged, never raised.
    """

    def __init__(self, settings: Settings, backend: Optional[CacheBackend] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.enabled = settings.cache_enabled
        self.default_ttl = settings.cache_ttl
        self.backend = backend or self._create_backend(settings, clock)
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        # Bumped by invalidation; fills started under an older generation are not stored
        self._generations: Dict[str, int] = {}
        self._global_generation = 0

    @staticmethod
    def _create_backend(settings: Settings, clock: Callable[[], float]) -> CacheBackend:
        if settings.cache_backend == "redis":
            if settings.redis_url and REDIS_AVAILABLE:
                return RedisCacheBackend(settings.redis_url, settings.cache_namespace)
            logger.warning("Redis cache requested but unavailable, using memory cache",
                           redis_url=settings.redis_url,
                           redis_available=REDIS_AVAILABLE)
        return MemoryCacheBackend(clock=clock, check_period=settings.cache_check_period)

    async def startup(self):
        logger.info("Cache layer initialized",
                    enabled=self.enabled,
                    backend=self.backend.name,
                    ttl=self.default_ttl)

    async def shutdown(self):
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()
            logger.info("Cache backend connections closed", backend=self.backend.name)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def derive_key(self, table: str, spec: "QuerySpec") -> str:
        return derive_key(table, spec)

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache, None when absent, expired or disabled."""
        if not self.enabled:
            return None
        try:
            value = await self.backend.get(key)
        except CacheUnavailable as e:
            logger.warning("Cache get failed, treating as miss", key=key, error=str(e))
            value = None

        if value is not None:
            self.stats["hits"] += 1
            log_cache_operation(logger, "get", key, hit=True)
        else:
            self.stats["misses"] += 1
            log_cache_operation(logger, "get", key, hit=False)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL (seconds)."""
        if not self.enabled:
            return False
        ttl = ttl or self.default_ttl
        try:
            stored = await self.backend.set(key, value, ttl)
        except CacheUnavailable as e:
            logger.warning("Cache set failed", key=key, error=str(e))
            return False
        if stored:
            self.stats["sets"] += 1
            log_cache_operation(logger, "set", key, ttl=ttl)
        return stored

    async def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            deleted = await self.backend.delete(key)
        except CacheUnavailable as e:
            logger.warning("Cache delete failed", key=key, error=str(e))
            return False
        if deleted:
            self.stats["deletes"] += 1
        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, table: str) -> int:
        """Remove every entry of ``table``. Returns the number removed."""
        if not self.enabled:
            return 0
        prefix = table_prefix(table)
        self._generations[table] = self._generations.get(table, 0) + 1
        for key in [k for k in self._inflight if k.startswith(prefix)]:
            self._inflight.pop(key, None)

        try:
            keys = await self.backend.delete_prefix(prefix)
        except CacheUnavailable as e:
            logger.warning("Cache invalidation failed", table=table, error=str(e))
            return 0

        self.stats["deletes"] += len(keys)
        for key in keys:
            log_cache_operation(logger, "delete", key)
        logger.info("Cache invalidated for table", table=table, keys=len(keys))
        return len(keys)

    async def invalidate_all(self) -> int:
        """Flush the whole cache. Returns the number of entries removed."""
        if not self.enabled:
            return 0
        self._global_generation += 1
        self._inflight.clear()
        try:
            count = await self.backend.clear()
        except CacheUnavailable as e:
            logger.warning("Cache flush failed", error=str(e))
            return 0
        logger.info("Cache flushed", keys=count)
        return count

    # ------------------------------------------------------------------
    # Read-through
    # ------------------------------------------------------------------

    def _generation(self, table: str) -> Tuple[int, int]:
        return self._global_generation, self._generations.get(table, 0)

    async def get_or_fill(self, key: str, loader: Callable[[], Awaitable[Any]], *,
                          table: str, ttl: Optional[int] = None) -> Any:
        """Return the cached value for ``key`` or load, store and return it.

        Concurrent callers for the same key share one loader call. The load
        runs as its own task, so a caller that is cancelled stops waiting
        without cancelling the load for the others. Failed loads are not
        cached. A load that was started before an invalidation of ``table``
        is returned to its waiters but not stored.
        """
        if not self.enabled:
            return await loader()

        cached = await self.get(key)
        if cached is not None:
            return cached

        fill = self._inflight.get(key)
        if fill is not None:
            log_cache_operation(logger, "join", key)
        else:
            fill = asyncio.ensure_future(self._fill(key, loader, self._generation(table), table, ttl))
            self._inflight[key] = fill
            fill.add_done_callback(functools.partial(self._fill_done, key))
        return await asyncio.shield(fill)

    async def _fill(self, key: str, loader: Callable[[], Awaitable[Any]],
                    generation: Tuple[int, int], table: str, ttl: Optional[int]) -> Any:
        value = await loader()
        if generation == self._generation(table):
            await self.set(key, value, ttl)
        else:
            log_cache_operation(logger, "discard", key, reason="invalidated during fill")
        return value

    def _fill_done(self, key: str, fill: "asyncio.Future[Any]") -> None:
        if self._inflight.get(key) is fill:
            del self._inflight[key]
        if not fill.cancelled():
            # retrieved here so a fill whose callers all went away does not warn on GC
            fill.exception()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        """Counters plus current entry count."""
        lookups = self.stats["hits"] + self.stats["misses"]
        try:
            keys = await self.backend.size() if self.enabled else 0
        except CacheUnavailable as e:
            logger.warning("Cache size unavailable", error=str(e))
            keys = None
        return {
            "enabled": self.enabled,
            "backend": self.backend.name,
            "ttl": self.default_ttl,
            **self.stats,
            "hit_rate": round(self.stats["hits"] / lookups, 4) if lookups else 0.0,
            "keys": keys,
            "inflight": len(self._inflight),
        }
