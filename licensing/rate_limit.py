from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final, Optional

import redis

from config import (
    APP_ENV,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
    REDIS_DISABLED,
    REDIS_URL,
)
from observability import get_logger, log_event

from .errors import RateLimitedError

RATE_LIMIT_MESSAGE: Final[str] = "系统繁忙，请稍后再试 (Too Many Requests)"
RATE_LIMIT_REDIS_KEY_PREFIX: Final[str] = "license:rate_limit:"
_MEMORY_PRUNE_THRESHOLD: Final[int] = 10_000

# Fixed window: a window older than `window` restarts at count=1, otherwise the
# count increments. Rejected requests are still counted.
RATE_LIMIT_LUA_SCRIPT: Final[str] = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local values = redis.call("HMGET", key, "count", "start")
local count = tonumber(values[1])
local start = tonumber(values[2])

if count == nil or start == nil or (now - start) > window then
  count = 1
  start = now
else
  count = count + 1
end

redis.call("HSET", key, "count", count, "start", start)
redis.call("EXPIRE", key, math.max(1, math.ceil(window * 2)))

return {count, tostring(start)}
"""

_LOGGER = get_logger("vipserver.licensing.rate_limit")


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    count: int
    remaining: int
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """
    Fixed-window admission control keyed by request source.

    Backed by an in-process table guarded by a lock, or by Redis when a client
    is supplied. A failing Redis degrades to the in-process table.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 60,
        max_requests: int = 60,
        redis_client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = float(max(1e-3, float(window_seconds)))
        self.max_requests = max(1, int(max_requests))
        self._client = redis_client
        self._clock = clock
        self._memory_lock = threading.Lock()
        self._memory_windows: dict[str, tuple[int, float]] = {}

    @classmethod
    def from_config(cls) -> "FixedWindowRateLimiter":
        return cls(
            window_seconds=RATE_LIMIT_WINDOW_SECONDS,
            max_requests=RATE_LIMIT_MAX_REQUESTS,
            redis_client=cls._build_redis_client(),
        )

    @staticmethod
    def _build_redis_client() -> Optional[redis.Redis]:
        if REDIS_DISABLED or str(REDIS_URL).startswith("memory://"):
            return None
        try:
            client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            return client
        except Exception as exc:  # noqa: BLE001
            log_event(
                _LOGGER,
                40 if _is_production_env() else 30,
                "rate_limit.redis_unavailable_fallback_memory",
                redis_url=REDIS_URL,
                error=str(exc),
            )
            return None

    @property
    def backend(self) -> str:
        return "redis" if self._client is not None else "memory"

    def allow(self, subject: str) -> RateLimitResult:
        key = f"{RATE_LIMIT_REDIS_KEY_PREFIX}{str(subject or 'unknown')}"
        now = float(self._clock())
        if self._client is not None:
            try:
                return self._allow_redis(key=key, now=now)
            except Exception as exc:  # noqa: BLE001
                # Redis outage: degrade to in-process limiting instead of failing requests.
                log_event(
                    _LOGGER,
                    40,
                    "rate_limit.redis_call_failed_fallback_memory",
                    subject=key,
                    error=str(exc),
                )
                self._client = None
        return self._allow_memory(key=key, now=now)

    def enforce(self, subject: str) -> RateLimitResult:
        result = self.allow(subject)
        if not result.allowed:
            raise RateLimitedError(
                RATE_LIMIT_MESSAGE,
                retry_after_seconds=result.retry_after_seconds,
                limit=result.limit,
            )
        return result

    def reset(self) -> None:
        with self._memory_lock:
            self._memory_windows.clear()

    def _result(self, *, count: int, start: float, now: float) -> RateLimitResult:
        allowed = count <= self.max_requests
        retry_after = 0
        if not allowed:
            retry_after = max(1, int(math.ceil(self.window_seconds - (now - start))))
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            count=count,
            remaining=max(0, self.max_requests - count),
            retry_after_seconds=retry_after,
        )

    def _allow_redis(self, *, key: str, now: float) -> RateLimitResult:
        if self._client is None:
            return self._allow_memory(key=key, now=now)
        raw = self._client.eval(RATE_LIMIT_LUA_SCRIPT, 1, key, repr(now), repr(self.window_seconds))
        if not isinstance(raw, list) or len(raw) < 2:
            raise RuntimeError("invalid redis rate limit response")
        return self._result(count=int(raw[0]), start=float(raw[1]), now=now)

    def _allow_memory(self, *, key: str, now: float) -> RateLimitResult:
        with self._memory_lock:
            count, start = self._memory_windows.get(key, (0, now))
            if count == 0 or now - start > self.window_seconds:
                count, start = 1, now
            else:
                count += 1
            self._memory_windows[key] = (count, start)
            if len(self._memory_windows) > _MEMORY_PRUNE_THRESHOLD:
                self._prune_locked(now)
        return self._result(count=count, start=start, now=now)

    def _prune_locked(self, now: float) -> None:
        stale = [k for k, (_, start) in self._memory_windows.items() if now - start > self.window_seconds]
        for k in stale:
            self._memory_windows.pop(k, None)
