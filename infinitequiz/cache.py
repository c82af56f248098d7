"""
In-memory caching for the quiz service.
Holds per-room leaderboards and the parsed static question bank.
"""

import time
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .logging_utils import get_logger

logger = get_logger("infinitequiz.cache")


@dataclass
class CacheEntry:
    """A single cache entry with value and expiration"""
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'evictions': 0}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if time.time() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        with self._lock:
            now = time.time()
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, created_at=now)
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._cache)
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return how many were dropped"""
        with self._lock:
            now = time.time()
            expired = [k for k, e in self._cache.items() if now > e.expires_at]
            for key in expired:
                del self._cache[key]
            self._stats['evictions'] += len(expired)
        if expired:
            logger.debug("cache_cleanup", extra={"evicted": len(expired)})
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total * 100) if total > 0 else 0
            return {
                **self._stats,
                'total_requests': total,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
            }


# Global cache instance
_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


# bumped on every invalidation; a fill read under an older version is dropped
_leaderboard_versions: Dict[str, int] = {}
_versions_lock = threading.Lock()


def leaderboard_version(room_code: str) -> int:
    with _versions_lock:
        return _leaderboard_versions.get(room_code, 0)


def cache_leaderboard(room_code: str, standings: list, ttl_seconds: int = 30,
                      version: Optional[int] = None) -> bool:
    """Standings change whenever a player finishes, so keep the TTL short.

    When `version` is given the fill only happens if no invalidation ran
    since it was taken. Returns whether the standings were cached.
    """
    with _versions_lock:
        if version is not None and _leaderboard_versions.get(room_code, 0) != version:
            logger.debug("stale_leaderboard_skipped", extra={"room": room_code})
            return False
        _cache.set(f"leaderboard:{room_code}", standings, ttl_seconds)
    return True


def get_cached_leaderboard(room_code: str) -> Optional[list]:
    return _cache.get(f"leaderboard:{room_code}")


def invalidate_leaderboard_cache(room_code: str) -> None:
    with _versions_lock:
        _leaderboard_versions[room_code] = _leaderboard_versions.get(room_code, 0) + 1
        _cache.delete(f"leaderboard:{room_code}")


def cache_question_bank(name: str, bank: list, ttl_hours: int = 24) -> None:
    _cache.set(f"bank:{name}", bank, ttl_hours * 3600)


def get_cached_question_bank(name: str) -> Optional[list]:
    return _cache.get(f"bank:{name}")
