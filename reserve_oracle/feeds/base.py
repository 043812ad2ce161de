"""
Base classes for HTTP data feeds.

Every network-facing feed (exchange tickers, reserve endpoints, attestation
endpoints) inherits from DataFeed and implements `_fetch`. The base class
owns the aiohttp session, rate limiting, TTL caching and retries.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar
import logging

import aiohttp

logger = logging.getLogger(__name__)

T = TypeVar('T')


class FeedError(Exception):
    """Base exception for feed transport errors"""
    pass


class RateLimitError(FeedError):
    """Raised when the upstream answers 429"""
    pass


class PayloadError(FeedError):
    """Upstream answered, but with data we cannot use; retrying will not help"""
    pass


@dataclass
class RateLimiter:
    """
    Token bucket shared by every request a feed makes.

    Args:
        requests_per_second: Refill rate
        burst_size: Bucket capacity
    """
    requests_per_second: float
    burst_size: int = 10

    _tokens: float = field(default=0.0, init=False)
    _refilled_at: float = field(default=0.0, init=False)
    _lock: Optional[asyncio.Lock] = field(default=None, init=False)

    def __post_init__(self):
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self._tokens = float(self.burst_size)
        self._refilled_at = time.monotonic()

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(
            float(self.burst_size),
            self._tokens + (now - self._refilled_at) * self.requests_per_second,
        )
        self._refilled_at = now

    async def acquire(self):
        """Take one token, sleeping until one is available"""
        # Bound to whichever loop first uses the limiter
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            self._refill()
            while self._tokens < 1:
                await asyncio.sleep((1 - self._tokens) / self.requests_per_second)
                self._refill()
            self._tokens -= 1


@dataclass
class CacheEntry(Generic[T]):
    """Response kept until `expires_at` (monotonic clock)"""
    data: T
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class DataFeed(ABC):
    """
    Abstract base class for all HTTP feeds.

    Provides:
    - Shared aiohttp session (lazily created, closed via close())
    - Rate limiting
    - Caching with TTL (cache_ttl=0 disables it)
    - Retries with exponential backoff; PayloadError is never retried
    - Health monitoring
    """

    def __init__(
        self,
        name: str,
        rate_limit: float = 10.0,  # requests per second
        cache_ttl: float = 1.0,    # seconds
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[Dict[str, str]] = None,
        health_window: float = 60.0,
    ):
        self.name = name
        self.headers = headers or {}
        self.rate_limiter = RateLimiter(rate_limit)
        self.cache_ttl = cache_ttl
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.health_window = health_window

        self._session = session
        self._owns_session = session is None
        self._cache: Dict[str, CacheEntry] = {}

        self._error_count = 0
        self._request_count = 0
        self._last_success: Optional[float] = None
        self._last_error: Optional[str] = None
        self._latencies: deque = deque(maxlen=100)

    @property
    def is_healthy(self) -> bool:
        """Succeeded within the health window and not currently failing"""
        if self._last_success is None:
            return False
        return self._error_count == 0 and time.time() - self._last_success < self.health_window

    @property
    def avg_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies) * 1000

    # ============ Transport ============

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a URL and decode JSON, mapping HTTP failures to FeedError"""
        session = await self._get_session()
        try:
            async with session.get(url, params=params, headers=self.headers) as resp:
                if resp.status == 429:
                    raise RateLimitError(f"{self.name}: rate limited by {url}")
                if resp.status != 200:
                    text = await resp.text()
                    raise FeedError(f"{self.name}: HTTP {resp.status} from {url}: {text[:200]}")
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise PayloadError(f"{self.name}: invalid JSON from {url}: {e}") from e
        except aiohttp.ClientError as e:
            raise FeedError(f"{self.name}: request to {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise FeedError(f"{self.name}: request to {url} timed out") from e

    # ============ Cache ============

    def _cache_key(self, *args, **kwargs) -> str:
        return f"{self.name}:{args}:{sorted(kwargs.items())}"

    def _get_cached(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired:
            del self._cache[key]
            return None
        return entry.data

    def _set_cached(self, key: str, data: Any):
        if self.cache_ttl > 0:
            self._cache[key] = CacheEntry(data=data, expires_at=time.monotonic() + self.cache_ttl)

    def clear_cache(self):
        self._cache.clear()

    # ============ Fetch ============

    def _backoff(self, attempt: int, error: Exception) -> float:
        delay = self.retry_delay * (2 ** attempt)
        if isinstance(error, RateLimitError):
            delay *= 2
        return delay

    async def fetch_with_retry(self, *args, **kwargs) -> Any:
        """
        Fetch through the cache, rate limiter and retry loop.

        Raises:
            PayloadError: the upstream returned unusable data (not retried)
            FeedError: every attempt failed
        """
        cache_key = self._cache_key(*args, **kwargs)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            await self.rate_limiter.acquire()
            self._request_count += 1
            started = time.monotonic()
            try:
                result = await self._fetch(*args, **kwargs)
            except PayloadError as e:
                self._record_failure(e)
                raise
            except (FeedError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                self._record_failure(e)
                logger.warning(f"{self.name}: attempt {attempt + 1}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self._backoff(attempt, e))
                continue

            self._latencies.append(time.monotonic() - started)
            self._record_success()
            self._set_cached(cache_key, result)
            return result

        raise FeedError(f"{self.name}: all {self.max_retries} attempts failed: {last_error}")

    def _record_success(self):
        self._last_success = time.time()
        self._error_count = 0
        self._last_error = None

    def _record_failure(self, error: Exception):
        self._error_count += 1
        self._last_error = str(error)

    @abstractmethod
    async def _fetch(self, *args, **kwargs) -> Any:
        """Perform one upstream request; raise FeedError on failure"""
        pass

    def get_status(self) -> Dict[str, Any]:
        """Feed status for monitoring"""
        return {
            "name": self.name,
            "healthy": self.is_healthy,
            "requests": self._request_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "avg_latency_ms": self.avg_latency_ms,
            "last_success": self._last_success,
            "cache_size": len(self._cache),
        }
