# gamepulse/cache.py
"""
Cache-aside layer in front of the dashboard queries.

The cache is an optimization only: every path that can read from it has an
equivalent path that recomputes from the database, and an absent or broken
backend only costs latency.
"""
import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy.exc import DisconnectionError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from gamepulse.exceptions import QueryUnavailableError

logger = logging.getLogger(__name__)

# Failures worth one retry: pool exhaustion, dropped connections, query timeout.
TRANSIENT_ERRORS = (asyncio.TimeoutError, PoolTimeoutError, DisconnectionError)

QueryFn = Callable[[], Awaitable[Any]]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True, separators=(",", ":"))


def normalize_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop unset filters and render dates so equal queries share a key."""
    normalized = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        normalized[str(key)] = value
    return normalized


# --- BACKENDS ---

class CacheBackend(ABC):
    """Volatile key/value store holding serialized results with a TTL."""

    name = "abstract"

    @abstractmethod
    async def is_ready(self) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def close(self) -> None:
        return None


class MemoryCacheBackend(CacheBackend):
    """In-process cache, for single-instance deployments and tests."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, tuple] = {}

    async def is_ready(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self):
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """
    Redis-backed cache.

    Connection state is tracked locally: a failed operation flips the state to
    "error" and the backend reports itself not ready until a probe (at most one
    per `probe_interval` seconds) gets a PONG again.
    """

    name = "redis"

    def __init__(self, client, probe_interval: float = 5.0, scan_count: int = 500):
        self.client = client
        self.probe_interval = probe_interval
        self.scan_count = scan_count
        self.state = "connecting"
        self._last_probe = 0.0

    async def connect(self) -> bool:
        return await self._probe()

    async def _probe(self) -> bool:
        self._last_probe = time.monotonic()
        try:
            await self.client.ping()
        except Exception as e:
            if self.state != "error":
                logger.warning("Redis cache unreachable: %s", e)
            self.state = "error"
            return False
        if self.state != "ready":
            logger.info("Redis cache connected")
        self.state = "ready"
        return True

    def mark_failed(self, error: Exception) -> None:
        if self.state == "ready":
            logger.warning("Redis cache marked unavailable: %s", error)
        self.state = "error"

    async def is_ready(self) -> bool:
        if self.state == "ready":
            return True
        if time.monotonic() - self._last_probe >= self.probe_interval:
            return await self._probe()
        return False

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except Exception as e:
            self.mark_failed(e)
            raise

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self.client.setex(key, ttl, value)
        except Exception as e:
            self.mark_failed(e)
            raise

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch = []
        try:
            async for key in self.client.scan_iter(match=f"{prefix}*", count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
        except Exception as e:
            self.mark_failed(e)
            raise
        return deleted

    async def close(self) -> None:
        await self.client.aclose()


class CacheProvider:
    """
    Resolves the current cache backend.

    The cache-aside layer calls the provider on every request, so swapping the
    backend takes effect immediately without a restart.
    """

    def __init__(self, backend: Optional[CacheBackend] = None):
        self._backend = backend

    def __call__(self) -> Optional[CacheBackend]:
        return self._backend

    def swap(self, backend: Optional[CacheBackend]) -> Optional[CacheBackend]:
        previous, self._backend = self._backend, backend
        logger.info(
            "Cache backend swapped: %s -> %s",
            previous.name if previous is not None else None,
            backend.name if backend is not None else None,
        )
        return previous


# --- CACHE-ASIDE ---

class CacheAside:
    def __init__(
        self,
        provider: Callable[[], Optional[CacheBackend]],
        key_prefix: str = "dashboard",
        query_timeout: float = 10.0,
        retry_delay: float = 0.5,
        verify_writes: bool = False,
    ):
        self.provider = provider
        self.key_prefix = key_prefix
        self.query_timeout = query_timeout
        self.retry_delay = retry_delay
        self.verify_writes = verify_writes
        self.stats = {
            "hits": 0,
            "misses": 0,
            "bypassed": 0,
            "errors": 0,
            "writes": 0,
            "retries": 0,
        }

    def key_for(self, view: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Deterministic key for (view, normalized params)."""
        canonical = serialize(normalize_params(params))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]
        return f"{self.key_prefix}:{view}:{digest}"

    def view_prefix(self, view: str) -> str:
        return f"{self.key_prefix}:{view}:"

    async def _usable_backend(self) -> Optional[CacheBackend]:
        backend = self.provider()
        if backend is None:
            return None
        try:
            if await backend.is_ready():
                return backend
        except Exception as e:
            logger.warning("Cache readiness check failed: %s", e)
        return None

    async def get_or_compute(self, key: str, ttl: int, query_fn: QueryFn) -> Any:
        """
        Return the cached result for `key`, or run `query_fn`, cache its result
        for `ttl` seconds and return it.

        Raises QueryUnavailableError if the query keeps failing transiently;
        any other query error propagates unchanged.
        """
        backend = await self._usable_backend()

        if backend is None:
            self.stats["bypassed"] += 1
        else:
            try:
                cached = await backend.get(key)
            except Exception as e:
                self.stats["errors"] += 1
                logger.warning("Cache read failed for %s: %s", key, e)
                cached = None
            if cached is not None:
                self.stats["hits"] += 1
                logger.debug("Cache HIT: %s", key)
                return json.loads(cached)
            self.stats["misses"] += 1
            logger.debug("Cache MISS: %s", key)

        result = await self._run_query(key, query_fn)
        payload = serialize(result)

        if backend is not None:
            await self._write(backend, key, payload, ttl)

        return json.loads(payload)

    async def _run_query(self, key: str, query_fn: QueryFn) -> Any:
        for attempt in (1, 2):
            try:
                return await asyncio.wait_for(query_fn(), timeout=self.query_timeout)
            except TRANSIENT_ERRORS as e:
                if attempt == 2:
                    logger.error("Query for %s failed after retry: %r", key, e)
                    raise QueryUnavailableError(f"query for {key} unavailable") from e
                self.stats["retries"] += 1
                logger.warning("Transient failure for %s (%r), retrying once", key, e)
                await asyncio.sleep(self.retry_delay)

    async def _write(self, backend: CacheBackend, key: str, payload: str, ttl: int) -> None:
        try:
            await backend.set(key, payload, ttl)
            self.stats["writes"] += 1
        except Exception as e:
            self.stats["errors"] += 1
            logger.warning("Cache write failed for %s: %s", key, e)
            return

        if self.verify_writes:
            try:
                stored = await backend.get(key)
            except Exception as e:
                logger.warning("Cache write verification read failed for %s: %s", key, e)
                return
            if stored != payload:
                logger.warning("Cache write verification mismatch for %s", key)

    async def invalidate(self, *views: str) -> int:
        """Drop every cached entry of the given views. Never raises."""
        backend = await self._usable_backend()
        if backend is None:
            return 0
        deleted = 0
        for view in views:
            try:
                deleted += await backend.delete_prefix(self.view_prefix(view))
            except Exception as e:
                self.stats["errors"] += 1
                logger.warning("Cache invalidation failed for view %s: %s", view, e)
        if deleted:
            logger.info("Invalidated %d cache entries for %s", deleted, ", ".join(views))
        return deleted

    async def flush(self) -> int:
        backend = await self._usable_backend()
        if backend is None:
            return 0
        return await backend.delete_prefix(f"{self.key_prefix}:")

    async def describe(self) -> Dict[str, Any]:
        backend = self.provider()
        ready = False
        if backend is not None:
            try:
                ready = await backend.is_ready()
            except Exception:
                ready = False
        return {
            "backend": backend.name if backend is not None else None,
            "connected": ready,
            "stats": dict(self.stats),
        }
