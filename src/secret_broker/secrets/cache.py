"""Lease cache for reducing backend calls.

This module provides in-memory caching of secret values with expiry
derived from backend lease metadata. Concurrent misses on the same path
are coalesced into a single backend load (single-flight).
"""

import asyncio
import contextlib
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial

from secret_broker.secrets.config import CacheConfig
from secret_broker.secrets.protocol import SecretValue

logger = logging.getLogger(__name__)

SecretLoader = Callable[[], Awaitable[SecretValue]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CachedSecret:
    """A cached secret entry.

    Attributes:
        value: The cached SecretValue
        cached_at: When the entry was cached
        expires_at: When the entry expires
        access_count: Number of times served from cache
        last_accessed: Last access time
    """

    value: SecretValue
    cached_at: datetime
    expires_at: datetime
    access_count: int = 0
    last_accessed: datetime = field(default_factory=_utcnow)


@dataclass
class CacheStats:
    """Statistics about cache performance.

    Attributes:
        hits: Number of cache hits
        misses: Number of loads started
        coalesced: Number of requests that joined an in-flight load
        evictions: Number of entries evicted
        expirations: Number of entries expired
        entries: Current number of entries
    """

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    expirations: int = 0
    entries: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses + self.coalesced
        if total == 0:
            return 0.0
        return self.hits / total


class LeaseCache:
    """In-memory lease cache with single-flight loading.

    An entry is served until its expiry: the backend lease expiry when the
    value carries one, otherwise the configured default TTL. A miss starts
    one load per path; concurrent requests for that path await the same
    load. Failed loads cache nothing.

    Example:
        cache = LeaseCache(CacheConfig(default_ttl_seconds=300))

        value = await cache.get("secret/db", lambda: backend.fetch("secret/db"))
    """

    def __init__(self, config: CacheConfig | None = None, clock: Clock | None = None):
        """Initialize the cache.

        Args:
            config: Cache configuration
            clock: Source of the current time (UTC)
        """
        self.config = config or CacheConfig()
        self._clock = clock or _utcnow
        self._entries: OrderedDict[str, CachedSecret] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[SecretValue]] = {}
        self._stats = CacheStats()
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> CacheStats:
        """Get current cache statistics."""
        self._stats.entries = len(self._entries)
        return self._stats

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        entry = self._entries.get(path)
        return entry is not None and self._clock() < entry.expires_at

    async def start(self) -> None:
        """Start the expired-entry cleanup task."""
        if self.config.enabled and self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.debug("Lease cache cleanup task started")

    async def stop(self) -> None:
        """Stop the cleanup task and detach in-flight loads."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
            logger.debug("Lease cache cleanup task stopped")
        self._inflight.clear()

    async def _cleanup_loop(self) -> None:
        """Periodic cleanup of expired entries."""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval_seconds)
                self.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Cache cleanup error: {e}")

    def peek(self, path: str) -> SecretValue | None:
        """Return the cached value if present and unexpired, without loading.

        Args:
            path: Path to the secret

        Returns:
            SecretValue marked as cached, or None
        """
        if not self.config.enabled:
            return None

        cached = self._entries.get(path)
        if cached is None:
            return None

        now = self._clock()
        if cached.expires_at <= now:
            self._entries.pop(path, None)
            self._stats.expirations += 1
            return None

        self._stats.hits += 1
        cached.access_count += 1
        cached.last_accessed = now
        self._entries.move_to_end(path)
        return cached.value.as_cached()

    async def get(
        self,
        path: str,
        loader: SecretLoader,
        *,
        timeout: float | None = None,
    ) -> SecretValue:
        """Get a secret, loading it through ``loader`` on a miss.

        Args:
            path: Path to the secret
            loader: Coroutine factory performing the backend fetch
            timeout: Bound on this caller's wait; the shared load keeps running

        Returns:
            SecretValue (``cached`` is True on a hit)

        Raises:
            TimeoutError: If the wait exceeds ``timeout``
            Exception: Whatever the loader raised
        """
        cached = self.peek(path)
        if cached is not None:
            return cached

        load = self._inflight.get(path)
        if load is None:
            self._stats.misses += 1
            load = asyncio.ensure_future(self._load(path, loader))
            self._inflight[path] = load
            load.add_done_callback(partial(self._finish_load, path))
        else:
            self._stats.coalesced += 1
            logger.debug(f"Joined in-flight load for {path}")

        # Shield so one caller timing out or being cancelled does not abort
        # the load other callers are waiting on.
        return await asyncio.wait_for(asyncio.shield(load), timeout)

    async def _load(self, path: str, loader: SecretLoader) -> SecretValue:
        value = await loader()
        # Only the registered load stores; invalidation detaches it first
        if self._inflight.get(path) is asyncio.current_task():
            self.set(path, value)
        return value

    def _finish_load(self, path: str, load: asyncio.Future[SecretValue]) -> None:
        if self._inflight.get(path) is load:
            del self._inflight[path]
        # Mark the exception retrieved when every waiter has timed out
        if not load.cancelled():
            load.exception()

    def set(self, path: str, value: SecretValue) -> None:
        """Store a secret in the cache.

        Expiry is the value's lease expiry when present, otherwise now plus
        the default TTL.
        """
        if not self.config.enabled:
            return

        now = self._clock()
        if value.lease_expiry is not None:
            expires_at = value.lease_expiry
        else:
            expires_at = now + timedelta(seconds=self.config.default_ttl_seconds)

        if expires_at <= now:
            logger.debug(f"Not caching already-expired lease for {path}")
            return

        self._entries.pop(path, None)
        while len(self._entries) >= self.config.max_entries:
            oldest_key = next(iter(self._entries))
            self._entries.pop(oldest_key)
            self._stats.evictions += 1
            logger.debug(f"Evicted cache entry: {oldest_key}")

        self._entries[path] = CachedSecret(
            value=value,
            cached_at=now,
            expires_at=expires_at,
        )

    def invalidate(self, path: str) -> bool:
        """Invalidate a cached entry.

        Also detaches any in-flight load for the path, so that the next
        request starts a fresh load and the detached one cannot store its
        (possibly stale) result.

        Returns:
            True if an entry or in-flight load was dropped
        """
        dropped_entry = self._entries.pop(path, None) is not None
        dropped_load = self._inflight.pop(path, None) is not None
        return dropped_entry or dropped_load

    def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate all entries whose path starts with ``prefix``.

        Returns:
            Number of entries invalidated
        """
        paths = {key for key in self._entries if key.startswith(prefix)}
        paths.update(key for key in self._inflight if key.startswith(prefix))
        for path in paths:
            self.invalidate(path)
        return len(paths)

    def clear(self) -> int:
        """Clear all cached entries.

        Returns:
            Number of entries cleared
        """
        count = len(self._entries)
        self._entries.clear()
        self._inflight.clear()
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [path for path, cached in self._entries.items() if cached.expires_at <= now]
        for path in expired:
            del self._entries[path]
        self._stats.expirations += len(expired)
        return len(expired)

    def expires_at(self, path: str) -> datetime | None:
        """Expiry of the cached entry for ``path``, if any."""
        entry = self._entries.get(path)
        return entry.expires_at if entry is not None else None
