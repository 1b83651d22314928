"""Per-key sliding window rate limiting for the chat API.

Each key (normally a user id) keeps the timestamps of its accepted requests
within the trailing window. Timestamps older than the window are discarded
before counting, so a caller regains quota one request at a time as its
oldest requests age out.

All operations are synchronous and never await, so under asyncio a check
is a single atomic step for the event loop: concurrent requests can never
observe a half-updated timestamp list.
"""

import math
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Optional

from fastapi import Depends

from community.app.core.config import settings
from community.app.core.logging import get_logger
from community.app.db.models import User
from community.app.exceptions import RateLimitExceededError
from community.app.middleware.auth import require_api_key

logger = get_logger(__name__)

# Maximum keys tracked before least recently used ones are evicted
DEFAULT_MAX_ENTRIES = 10000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window configuration."""
    max_requests: int = 10
    window_ms: int = 60_000

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_ms < 1:
            raise ValueError("window_ms must be at least 1")


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    wait_time_ms: int = 0


class SlidingWindowRateLimiter:
    """In-memory sliding window rate limiter.

    Suitable for single-process deployments; state does not survive a
    restart and is not shared between workers.

    Memory stays bounded: keys whose requests have all expired are swept
    once per window, and past ``max_entries`` keys the least recently used
    ones are evicted.

    Example:
        >>> limiter = SlidingWindowRateLimiter(RateLimitConfig(max_requests=2, window_ms=1000))
        >>> limiter.check_limit("user-1").allowed
        True
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = _monotonic_ms,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        """Initialize rate limiter.

        Args:
            config: Window width and request cap
            clock: Returns the current time in milliseconds
            max_entries: Maximum number of keys to track
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._last_cleanup = clock()

    def _prune(self, timestamps: Deque[float], now: float) -> None:
        cutoff = now - self.config.window_ms
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def _enforce_lru_limit(self) -> None:
        """Evict the oldest 20% of keys once over ``max_entries``."""
        if len(self._entries) <= self._max_entries:
            return
        remove_count = max(1, int(self._max_entries * 0.2))
        for _ in range(remove_count):
            self._entries.popitem(last=False)
        logger.debug(f"Rate limiter LRU evicted {remove_count} keys")

    def check_limit(self, key: str) -> RateLimitResult:
        """Check and record a request for ``key``.

        Returns:
            RateLimitResult; ``wait_time_ms`` is positive only when denied
        """
        now = self._clock()
        if now - self._last_cleanup >= self.config.window_ms:
            self.cleanup(now)

        timestamps = self._entries.get(key)
        if timestamps is None:
            timestamps = deque()
            self._entries[key] = timestamps
            self._enforce_lru_limit()
        else:
            self._entries.move_to_end(key)
            self._prune(timestamps, now)

        if len(timestamps) >= self.config.max_requests:
            wait_time_ms = timestamps[0] + self.config.window_ms - now
            return RateLimitResult(
                allowed=False,
                remaining=0,
                wait_time_ms=max(1, math.ceil(wait_time_ms)),
            )

        timestamps.append(now)
        return RateLimitResult(
            allowed=True,
            remaining=self.config.max_requests - len(timestamps),
        )

    def get_count(self, key: str) -> int:
        """Number of requests for ``key`` inside the current window."""
        timestamps = self._entries.get(key)
        if not timestamps:
            return 0
        cutoff = self._clock() - self.config.window_ms
        return sum(1 for ts in timestamps if ts > cutoff)

    def reset(self, key: str) -> None:
        """Restore full quota for one key."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Remove every tracked key."""
        self._entries.clear()

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop keys whose timestamps have all expired.

        Returns:
            Number of keys removed
        """
        if now is None:
            now = self._clock()
        self._last_cleanup = now
        expired = []
        for key, timestamps in self._entries.items():
            self._prune(timestamps, now)
            if not timestamps:
                expired.append(key)
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


chat_rate_limiter = SlidingWindowRateLimiter(
    RateLimitConfig(
        max_requests=settings.chat_rate_limit_max_requests,
        window_ms=settings.chat_rate_limit_window_ms,
    )
)


def get_chat_rate_limiter() -> SlidingWindowRateLimiter:
    return chat_rate_limiter


async def enforce_chat_rate_limit(
    user: User = Depends(require_api_key),
    limiter: SlidingWindowRateLimiter = Depends(get_chat_rate_limiter),
) -> RateLimitResult:
    """FastAPI dependency gating how often a user may send chat messages.

    Raises:
        RateLimitExceededError: when the user is over the limit
    """
    result = limiter.check_limit(user.id)
    if not result.allowed:
        logger.info(
            "Chat rate limit exceeded",
            extra={"user_id": user.id, "wait_time_ms": result.wait_time_ms},
        )
        raise RateLimitExceededError(result.wait_time_ms)
    return result


def rate_limit_headers(exc: RateLimitExceededError) -> Dict[str, str]:
    reset_at = datetime.now(timezone.utc) + timedelta(milliseconds=exc.wait_time_ms)
    return {
        "Retry-After": str(exc.retry_after),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": reset_at.isoformat(),
    }
