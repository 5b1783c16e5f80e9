"""
Logo Cache Service for watermarking.

Thumbnail requests arrive in bursts (a gallery page loads dozens at once), and
each watermarked one needs the same tenant or client logo. Logos are cached by
URL for LOGO_CACHE_TTL seconds, in-process by default or in Redis when several
API instances should share one cache.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

import structlog

from config import settings
from pipeline.error_handler import FailurePolicy, Operation, policy_for

logger = structlog.get_logger()


@dataclass(frozen=True)
class LogoCacheEntry:
    url: str
    content: bytes
    fetched_at: float


class ByteCache(ABC):
    """Key -> bytes cache with a fixed time-to-live."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        pass


class InMemoryTTLCache(ByteCache):
    """
    Process-local TTL cache.

    Example usage:
        cache = InMemoryTTLCache(ttl_seconds=3600)
        cache.set("https://cdn.example.com/logo.png", logo_bytes)
        cache.get("https://cdn.example.com/logo.png")
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl_seconds: Entry lifetime
            clock: Monotonic time source (tests pass a fake)
        """
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, LogoCacheEntry] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self.clock() - entry.fetched_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.content

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._entries[key] = LogoCacheEntry(url=key, content=value, fetched_at=self.clock())

    def __len__(self) -> int:
        return len(self._entries)


class RedisByteCache(ByteCache):
    """Redis-backed cache shared across API instances; Redis does the expiry."""

    def __init__(self, redis_client, ttl_seconds: int, prefix: str = "logo:"):
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    def get(self, key: str) -> Optional[bytes]:
        return self.redis.get_bytes(self.prefix + key)

    def set(self, key: str, value: bytes) -> None:
        self.redis.set_bytes(self.prefix + key, value, self.ttl_seconds)


class LogoCache:
    """
    Read-through logo cache.

    Example usage:
        logos = get_logo_cache()
        logo = logos.get_logo(tenant.logo_url)  # None if the logo can't be fetched
    """

    def __init__(self, backend: ByteCache, fetcher: Optional[Callable[[str], bytes]] = None):
        """
        Args:
            backend: Where cached bytes live
            fetcher: url -> bytes (default: services.http_fetch.fetch_bytes)
        """
        if fetcher is None:
            from services.http_fetch import fetch_bytes
            fetcher = fetch_bytes
        self.backend = backend
        self.fetcher = fetcher

    def get_logo(self, url: str) -> Optional[bytes]:
        """
        Cached logo bytes, fetching on a miss.

        Returns:
            Logo bytes, or None if the fetch failed (watermarking is skipped)
        """
        cached = self.backend.get(url)
        if cached is not None:
            return cached

        try:
            content = self.fetcher(url)
        except Exception as e:
            if policy_for(Operation.LOGO_FETCH, e) is not FailurePolicy.DEGRADE:
                raise
            logger.warning("logo_fetch_failed", url=url, error=str(e))
            return None

        self.backend.set(url, content)
        logger.info("logo_cached", url=url, size_bytes=len(content))
        return content


# Singleton instance
_logo_cache: Optional[LogoCache] = None


def get_logo_cache() -> LogoCache:
    """
    Get singleton LogoCache using the backend selected by LOGO_CACHE_BACKEND.

    Returns:
        LogoCache instance
    """
    global _logo_cache
    if _logo_cache is None:
        if settings.LOGO_CACHE_BACKEND == "redis":
            from redis_client import get_redis_client

            backend: ByteCache = RedisByteCache(get_redis_client(), settings.LOGO_CACHE_TTL)
        else:
            backend = InMemoryTTLCache(settings.LOGO_CACHE_TTL)
        _logo_cache = LogoCache(backend)
        logger.info("logo_cache_initialized", backend=settings.LOGO_CACHE_BACKEND)
    return _logo_cache
