"""Sliding window rate limiting for FastAPI BotGuard.

Each identity key owns a list of request timestamps bounded by the window
and the maximum count. ``check_and_record`` prunes lazily, rejects without
recording when the window is full and otherwise records the request. All
mutation of one key happens under that key's lock, so concurrent callers can
never both be admitted past the limit.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field

from fastapi_botguard.errors import RateExceeded
from fastapi_botguard.shield import Shield, shield
from fastapi_botguard.typing import KeyFunc
from fastapi_botguard.utils import ShardedLockMap, get_client_ip

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    """Sliding window parameters."""
    window_seconds: float = Field(default=60.0, gt=0)
    max_requests: int = Field(default=100, gt=0)
    lock_shards: int = Field(default=64, ge=1)


class RateLimitStatus(BaseModel):
    """State of a key's window right after an admitted request."""

    model_config = ConfigDict(frozen=True)

    key: str
    limit: int
    remaining: int
    reset_after: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }


class RateLimitBackend(ABC):
    """Abstract base class for rate limit storage backends."""

    @abstractmethod
    def check_and_record(self, key: str, now: float, window_seconds: float, max_requests: int) -> RateLimitStatus:
        """Admit and record the request or raise RateExceeded."""
        pass

    @abstractmethod
    def get_count(self, key: str, now: float, window_seconds: float) -> int:
        """Count of timestamps inside the window, without recording."""
        pass

    @abstractmethod
    def reset(self, key: str) -> None:
        """Forget all timestamps for the key."""
        pass

    @abstractmethod
    def sweep(self, now: float, window_seconds: float) -> int:
        """Drop keys whose windows are empty; returns how many."""
        pass


class MemoryRateLimitBackend(RateLimitBackend):
    """In-memory sliding windows with one lock shard per group of keys."""

    def __init__(self, lock_shards: int = 64):
        self._windows: Dict[str, deque] = {}
        self._locks = ShardedLockMap(lock_shards)

    def __len__(self) -> int:
        return len(self._windows)

    @staticmethod
    def _prune(timestamps: deque, cutoff: float) -> None:
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()

    def check_and_record(self, key: str, now: float, window_seconds: float, max_requests: int) -> RateLimitStatus:
        with self._locks.lock_for(key):
            timestamps = self._windows.setdefault(key, deque())
            self._prune(timestamps, now - window_seconds)

            if len(timestamps) >= max_requests:
                retry_after = timestamps[0] + window_seconds - now
                raise RateExceeded(
                    key=key,
                    limit=max_requests,
                    window_seconds=window_seconds,
                    retry_after=max(retry_after, 0.0),
                )

            timestamps.append(now)
            return RateLimitStatus(
                key=key,
                limit=max_requests,
                remaining=max_requests - len(timestamps),
                reset_after=timestamps[0] + window_seconds - now,
            )

    def get_count(self, key: str, now: float, window_seconds: float) -> int:
        with self._locks.lock_for(key):
            timestamps = self._windows.get(key)
            if not timestamps:
                return 0
            self._prune(timestamps, now - window_seconds)
            return len(timestamps)

    def reset(self, key: str) -> None:
        with self._locks.lock_for(key):
            self._windows.pop(key, None)

    def sweep(self, now: float, window_seconds: float) -> int:
        removed = 0
        for key in list(self._windows):
            with self._locks.lock_for(key):
                timestamps = self._windows.get(key)
                if timestamps is None:
                    continue
                self._prune(timestamps, now - window_seconds)
                if not timestamps:
                    del self._windows[key]
                    removed += 1
        return removed


class SlidingWindowRateLimiter:
    """Bounds request volume per identity key (default 100 per 60s)."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        backend: Optional[RateLimitBackend] = None,
    ):
        self.config = config or RateLimitConfig()
        self.backend = backend or MemoryRateLimitBackend(self.config.lock_shards)

    @property
    def window_seconds(self) -> float:
        return self.config.window_seconds

    @property
    def max_requests(self) -> int:
        return self.config.max_requests

    def check_and_record(self, key: str, now: Optional[float] = None) -> RateLimitStatus:
        """Record a request for ``key``.

        Raises:
            RateExceeded: The window already holds ``max_requests`` timestamps
        """
        now = time.time() if now is None else now
        try:
            return self.backend.check_and_record(
                key, now, self.config.window_seconds, self.config.max_requests
            )
        except RateExceeded:
            logger.warning(f"Rate limit exceeded for key {key[:16]}")
            raise

    def peek(self, key: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return self.backend.get_count(key, now, self.config.window_seconds)

    def reset(self, key: str) -> None:
        self.backend.reset(key)

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return self.backend.sweep(now, self.config.window_seconds)


class RateLimitShield:
    """Rate limiting shield for FastAPI endpoints."""

    def __init__(
        self,
        requests: int = 100,
        window_seconds: float = 60.0,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        key_func: Optional[KeyFunc] = None,
        trusted_proxies: Optional[List[str]] = None,
    ):
        """Initialize rate limiting shield.

        Args:
            requests: Max requests per window
            window_seconds: Length of the sliding window
            limiter: Existing limiter to share state with (overrides the two above)
            key_func: Function to generate rate limit key from request
            trusted_proxies: Proxy networks whose forwarding headers are believed
        """
        self.limiter = limiter or SlidingWindowRateLimiter(
            RateLimitConfig(window_seconds=window_seconds, max_requests=requests)
        )
        self.trusted_proxies = trusted_proxies
        self.key_func = key_func or self._default_key_func

    def _default_key_func(self, request: Request) -> str:
        """Default key function uses client IP."""
        return f"rate_limit:{get_client_ip(request, self.trusted_proxies)}"

    def create_shield(self, name: str = "RateLimit") -> Shield:
        """Create a shield instance for rate limiting."""

        def rate_limit_shield(request: Request) -> Optional[Dict[str, Any]]:
            key = self.key_func(request)
            try:
                rate_status = self.limiter.check_and_record(key)
            except RateExceeded as exc:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Rate limit exceeded",
                    headers=exc.headers(),
                )
            return {"rate_limit_key": key, "remaining": rate_status.remaining}

        return shield(
            rate_limit_shield,
            name=name,
            auto_error=True,
        )


def rate_limit(
    requests: int = 100,
    window_seconds: float = 60.0,
    key_func: Optional[KeyFunc] = None,
    limiter: Optional[SlidingWindowRateLimiter] = None,
    name: str = "RateLimit",
    trusted_proxies: Optional[List[str]] = None,
) -> Shield:
    """Create a rate limiting shield.

    Examples:
        ```python
        @app.post("/login")
        @rate_limit(requests=5, window_seconds=60)
        def login():
            return {"status": "ok"}
        ```
    """
    return RateLimitShield(
        requests=requests,
        window_seconds=window_seconds,
        limiter=limiter,
        key_func=key_func,
        trusted_proxies=trusted_proxies,
    ).create_shield(name=name)


def per_ip_rate_limit(requests: int = 100, window_seconds: float = 60.0) -> Shield:
    """Create a per-IP rate limiting shield."""
    return rate_limit(requests=requests, window_seconds=window_seconds, name="PerIPRateLimit")
