from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from cinematch.logging import get_logger
from cinematch.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter:
    """Fixed-window point limiter with an optional block period.

    The consumption that exceeds ``points`` inside a window is refused and,
    when ``block_seconds`` is set, the key stays refused for that long. While
    blocked, calls fail fast and do not consume anything. Counters live in
    Redis when a cache is available and in process memory otherwise.
    """

    def __init__(
        self,
        key_prefix: str,
        *,
        points: int,
        duration_seconds: int,
        block_seconds: int = 0,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if points <= 0:
            raise ValueError("points must be positive")
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        self.key_prefix = key_prefix
        self.points = points
        self.duration_seconds = duration_seconds
        self.block_seconds = max(0, block_seconds)
        self.cache = cache
        self._clock = clock
        # key -> (consumed, window_ends_at)
        self._windows: Dict[str, Tuple[int, float]] = {}
        # key -> blocked_until
        self._blocks: Dict[str, float] = {}
        self._next_sweep = 0.0
        self._lock = asyncio.Lock()

    async def consume(self, key: str, cost: int = 1) -> RateLimitResult:
        if self.cache:
            allowed, remaining, ms_before_next = await self.cache.consume_points(
                self.key_prefix,
                key,
                points=self.points,
                duration_seconds=self.duration_seconds,
                block_seconds=self.block_seconds,
                cost=cost,
            )
            retry_after = 0 if allowed else math.ceil(ms_before_next / 1000)
            return self._log_result(key, RateLimitResult(allowed, remaining, retry_after))

        async with self._lock:
            now = self._clock()
            self._prune_expired(now)
            blocked_until = self._blocks.get(key)
            if blocked_until is not None:
                if blocked_until > now:
                    return self._log_result(
                        key, RateLimitResult(False, 0, math.ceil(blocked_until - now))
                    )
                self._blocks.pop(key, None)

            consumed, window_ends_at = self._windows.get(key, (0, 0.0))
            if window_ends_at <= now:
                consumed, window_ends_at = 0, now + self.duration_seconds
            consumed += max(1, cost)

            if consumed > self.points:
                if self.block_seconds:
                    self._blocks[key] = now + self.block_seconds
                    self._windows.pop(key, None)
                    result = RateLimitResult(False, 0, self.block_seconds)
                else:
                    self._windows[key] = (consumed, window_ends_at)
                    result = RateLimitResult(False, 0, math.ceil(window_ends_at - now))
                return self._log_result(key, result)

            self._windows[key] = (consumed, window_ends_at)
            return RateLimitResult(True, self.points - consumed, 0)

    async def reset(self, key: str) -> None:
        if self.cache:
            await self.cache.reset_points(self.key_prefix, key)
            return
        async with self._lock:
            self._windows.pop(key, None)
            self._blocks.pop(key, None)

    def _prune_expired(self, now: float) -> None:
        """Drop finished windows and lapsed blocks, at most once per window length."""
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.duration_seconds
        for key in [k for k, (_, ends_at) in self._windows.items() if ends_at <= now]:
            del self._windows[key]
        for key in [k for k, until in self._blocks.items() if until <= now]:
            del self._blocks[key]

    def _log_result(self, key: str, result: RateLimitResult) -> RateLimitResult:
        if not result.allowed:
            logger.info(
                "rate_limit_denied",
                limiter=self.key_prefix,
                retry_after=result.retry_after_seconds,
            )
        return result
