"""Disk-backed TTL result cache (cache-aside), shared across worker processes."""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from diskcache import Cache

from .config import DEFAULT_CACHE_SIZE_LIMIT, DEFAULT_CACHE_TTL

LOGGER = logging.getLogger(__name__)

GENERAL_PREFIX = "cache:general:"


def normalize_url(url: str) -> str:
    """Canonical form of ``url`` used in cache keys.

    Scheme and host are lower-cased, the fragment is dropped and a trailing
    slash on the path is removed. Query strings are kept because they often
    select a product variant.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def _kind_of(key: str) -> str:
    return key.split(":", 2)[1] if key.startswith("cache:") and key.count(":") >= 2 else "general"


class ResultCache:
    """TTL cache with per-kind lifetimes on top of :class:`diskcache.Cache`.

    Every worker process pointed at the same ``directory`` sees the same
    entries. Values are pickled, so callers never share mutable state with
    the cache. Concurrent writers resolve last-write-wins; once the store
    exceeds ``size_limit`` bytes the least recently used entries are culled.
    """

    def __init__(
        self,
        directory: Optional[str] = None,
        ttl_by_kind: Optional[Dict[str, int]] = None,
        *,
        size_limit: int = DEFAULT_CACHE_SIZE_LIMIT,
    ) -> None:
        if size_limit < 1:
            raise ValueError("size_limit must be positive")
        self.ttl_by_kind: Dict[str, float] = dict(DEFAULT_CACHE_TTL)
        if ttl_by_kind:
            self.ttl_by_kind.update(ttl_by_kind)
        self.size_limit = size_limit
        self._cache = Cache(
            directory,
            size_limit=size_limit,
            eviction_policy="least-recently-used",
        )
        self._cache.stats(enable=True)

    @property
    def directory(self) -> str:
        return self._cache.directory

    def close(self) -> None:
        self._cache.close()

    def __enter__(self) -> "ResultCache":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def prefix_for(kind: str) -> str:
        if not kind:
            return GENERAL_PREFIX
        return f"cache:{kind}:"

    def generate_key(self, kind: str, identifier: str) -> str:
        """Generate cache key from operation kind and (URL) identifier."""
        return f"{self.prefix_for(kind)}{normalize_url(identifier)}"

    def ttl_for(self, kind: str) -> float:
        return self.ttl_by_kind.get(kind, self.ttl_by_kind["temporary"])

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or ``None`` when absent or expired."""
        value = self._cache.get(key, default=None, retry=True)
        if value is None:
            LOGGER.debug("Cache miss: %s", key)
            return None
        LOGGER.debug("Cache hit: %s", key)
        return value

    def set(self, key: str, value: Any, kind: str = "temporary", ttl: Optional[float] = None) -> None:
        """Store ``value`` under ``key`` for the kind's TTL (or ``ttl`` seconds)."""
        lifetime = self.ttl_for(kind) if ttl is None else ttl
        self._cache.set(key, value, expire=lifetime, retry=True)
        LOGGER.debug("Cache set: %s (ttl=%.0fs)", key, lifetime)

    def delete(self, key: str) -> bool:
        return self._cache.delete(key, retry=True)

    def exists(self, key: str) -> bool:
        return key in self._cache

    def _expire_time(self, key: str) -> Optional[float]:
        found = self._cache.get(key, default=None, expire_time=True, retry=True)
        if not found or found[0] is None:
            return None
        return found[1]

    def ttl(self, key: str) -> float:
        """Remaining lifetime in seconds, or -1 when the key is absent."""
        expire_at = self._expire_time(key)
        if expire_at is None:
            return -1
        remaining = expire_at - time.time()
        return remaining if remaining > 0 else -1

    def extend_ttl(self, key: str, seconds: float) -> bool:
        remaining = self.ttl(key)
        if remaining < 0:
            return False
        return self._cache.touch(key, expire=remaining + seconds, retry=True)

    async def get_or_set(
        self,
        kind: str,
        identifier: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Cache-aside helper: return the cached value or compute and store it.

        ``None`` results are returned but never cached.
        """
        key = self.generate_key(kind, identifier)
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        if value is not None:
            self.set(key, value, kind, ttl)
        return value

    def invalidate_prefix(self, kind: str) -> int:
        """Drop every entry of ``kind``; returns the number removed."""
        prefix = self.prefix_for(kind)
        doomed = [key for key in self._cache.iterkeys() if key.startswith(prefix)]
        removed = sum(1 for key in doomed if self._cache.delete(key, retry=True))
        if removed:
            LOGGER.info("Cache invalidated %d %s entries", removed, kind)
        return removed

    def batch_get(self, kind: str, identifiers: Iterable[str]) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        for identifier in identifiers:
            value = self.get(self.generate_key(kind, identifier))
            if value is not None:
                found[identifier] = value
        return found

    def batch_set(self, kind: str, values: Dict[str, Any], ttl: Optional[float] = None) -> None:
        for identifier, value in values.items():
            self.set(self.generate_key(kind, identifier), value, kind, ttl)

    def clear(self) -> int:
        count = self._cache.clear(retry=True)
        if count:
            LOGGER.warning("All cache cleared (%d entries)", count)
        return count

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        self._cache.expire(retry=True)
        hits, misses = self._cache.stats()
        by_kind: Dict[str, int] = {}
        for key in self._cache.iterkeys():
            kind = _kind_of(key)
            by_kind[kind] = by_kind.get(kind, 0) + 1
        return {
            "entries": len(self._cache),
            "volume": self._cache.volume(),
            "size_limit": self.size_limit,
            "hits": hits,
            "misses": misses,
            "by_kind": by_kind,
            "ttl_by_kind": dict(self.ttl_by_kind),
        }
