from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from redis.exceptions import RedisError


if TYPE_CHECKING:
    import redis.asyncio as redis

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitWindow:
    seconds: int
    limit: int

    def __post_init__(self) -> None:
        if self.seconds <= 0 or self.limit <= 0:
            raise ValueError("Rate limit window and limit must be positive")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    window: RateLimitWindow | None = None
    count: int = 0


DEFAULT_WINDOWS: tuple[RateLimitWindow, ...] = (
    RateLimitWindow(seconds=60, limit=300),
    RateLimitWindow(seconds=300, limit=3000),
)


def parse_windows(spec: str) -> tuple[RateLimitWindow, ...]:
    """Parse ``"60:300,300:3000"`` into windows sorted by duration."""
    windows = []
    for chunk in spec.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        seconds, _, limit = chunk.partition(":")
        windows.append(RateLimitWindow(seconds=int(seconds), limit=int(limit)))
    if not windows:
        raise ValueError("At least one rate limit window is required")
    return tuple(sorted(windows, key=lambda w: w.seconds))


class FixedWindowRateLimiter:
    """
    Multi-window fixed window rate limiter using Redis counters.

    Each (identifier, window) pair owns one counter that is created by the first
    INCR and expires together with its window. Windows are checked shortest first
    and the first breached window denies the request; the breaching increment is
    kept, so a blocked caller still spends a slot. Counters reset at window
    boundaries, which lets a caller burst up to 2x the limit across a boundary.
    """

    def __init__(
        self,
        redis_client: "redis.Redis[bytes]",
        windows: Sequence[RateLimitWindow] = DEFAULT_WINDOWS,
        key_prefix: str = "ratelimit:",
        fail_open: bool = True,
    ) -> None:
        self._redis = redis_client
        self._windows = tuple(sorted(windows, key=lambda w: w.seconds))
        self._key_prefix = key_prefix
        self._fail_open = fail_open

    @property
    def windows(self) -> tuple[RateLimitWindow, ...]:
        return self._windows

    def _key(self, identifier: str, window: RateLimitWindow) -> str:
        return f"{self._key_prefix}{window.seconds}s:{identifier}"

    async def _bump(self, key: str, window: RateLimitWindow) -> tuple[int, int]:
        pipe = self._redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window.seconds, nx=True)
        pipe.ttl(key)
        results: list[Any] = await pipe.execute()
        return int(results[0]), int(results[2])

    async def check(self, identifier: str) -> RateLimitDecision:
        """Count one request for ``identifier`` against every window."""
        count = 0
        for window in self._windows:
            key = self._key(identifier, window)
            try:
                count, ttl = await self._bump(key, window)
            except RedisError as e:
                logger.error("rate_limit_store_unavailable", identifier=identifier, error=str(e))
                if self._fail_open:
                    return RateLimitDecision(allowed=True)
                raise

            if count > window.limit:
                retry_after = ttl if ttl > 0 else window.seconds
                logger.warning(
                    "rate_limit_exceeded",
                    identifier=identifier,
                    window_seconds=window.seconds,
                    current_count=count,
                    limit=window.limit,
                )
                return RateLimitDecision(allowed=False, retry_after=retry_after, window=window, count=count)

        return RateLimitDecision(allowed=True, count=count)

    async def get_count(self, identifier: str, window: RateLimitWindow) -> int:
        value = await self._redis.get(self._key(identifier, window))
        return int(value) if value is not None else 0
