"""
In-process result cache for read-heavy ranking queries.

Leaderboard responses are computed from every user's stats, so they are cached
per filter combination and dropped wholesale whenever points are distributed.
"""
from __future__ import annotations

import hashlib
import json
import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


def make_cache_key(namespace: str, *, scope: list[str] | None = None, params: dict[str, Any] | None = None) -> str:
    """NAMESPACE[:scope...]:digest(params). Invalidation works on the namespace prefix."""
    ns = str(namespace or "").strip().upper()
    blob = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]
    parts = [ns] + [str(s).strip() for s in (scope or []) if str(s or "").strip()] + [digest]
    return ":".join(parts)


class ResultCache:
    def __init__(self, *, ttl_seconds: int, max_items: int):
        self._cache = TTLCache(maxsize=max(16, int(max_items)), ttl=max(1, int(ttl_seconds)))
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._cache:
                self._hits += 1
                return self._cache[key]
            self._misses += 1
        value = factory()
        with self._lock:
            self._cache[key] = value
        return value

    def invalidate_prefix(self, prefix: str) -> int:
        pfx = str(prefix or "").strip().upper()
        if not pfx:
            return 0
        with self._lock:
            doomed = [k for k in list(self._cache.keys()) if str(k).startswith(pfx)]
            for k in doomed:
                self._cache.pop(k, None)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "ttl": self._cache.ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


def _int_env(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


_cache = ResultCache(
    ttl_seconds=min(3600, _int_env("LEADERBOARD_CACHE_TTL_SECONDS", 60)),
    max_items=_int_env("LEADERBOARD_CACHE_MAX_ITEMS", 1000),
)


def cache_get_or_set(key: str, factory: Callable[[], Any]) -> Any:
    return _cache.get_or_set(key, factory)


def cache_invalidate_prefix(prefix: str) -> int:
    return _cache.invalidate_prefix(prefix)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
