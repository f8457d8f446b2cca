"""
Simple in-memory caching for leaderboard reads.

Top-player lists are cached per limit with a short TTL and dropped as soon
as a match outcome is recorded.
"""

import time
from typing import Any, Optional, Dict, List
import threading
from dataclasses import dataclass

from .logging_utils import get_logger

logger = get_logger("tictactoe.cache")


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

    def get(self, key: str) -> Optional[Any]:
        """Get a value, or None if missing or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if time.time() > entry.expires_at:
                del self._cache[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        with self._lock:
            now = time.time()
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, created_at=now)

    def delete_prefix(self, prefix: str) -> int:
        """Drop every key starting with `prefix`, return how many went"""
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for k in keys:
                del self._cache[k]
            return len(keys)

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = time.time()
            expired_keys = [key for key, entry in self._cache.items() if now > entry.expires_at]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)


_TOP_PLAYERS_PREFIX = "top_players:"


def cache_top_players(cache: MemoryCache, limit: int, players: List[dict], ttl_seconds: int = 30) -> None:
    cache.set(f"{_TOP_PLAYERS_PREFIX}{limit}", players, ttl_seconds)


def get_cached_top_players(cache: MemoryCache, limit: int) -> Optional[List[dict]]:
    return cache.get(f"{_TOP_PLAYERS_PREFIX}{limit}")


def invalidate_top_players(cache: MemoryCache) -> None:
    """Called whenever a match outcome changes the standings"""
    dropped = cache.delete_prefix(_TOP_PLAYERS_PREFIX)
    if dropped:
        logger.debug("top_players_cache_invalidated", extra={"count": dropped})


def cleanup_cache_periodically(cache: MemoryCache) -> int:
    expired_count = cache.cleanup_expired()
    if expired_count > 0:
        logger.info("cache_cleanup", extra={"count": expired_count})
    return expired_count
