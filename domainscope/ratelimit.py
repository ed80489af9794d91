# domainscope/ratelimit.py
"""
Per-client admission control, checked before a scan starts.

Sliding window log: each admitted request records its timestamp; a request
is admitted while fewer than `limit` timestamps fall inside the last
`window` seconds. Once the oldest one ages out, the client can scan again.

Backing stores:
    MemoryRateLimitStore  - single process, a deque per client
    RedisRateLimitStore   - shared across workers, one sorted set per client
                            updated atomically by a Lua script
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Optional, Tuple

import redis

from domainscope.config import Settings
from domainscope.errors import RateLimitExceeded
from domainscope.utils.clock import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

# (admitted, requests in window after this call, timestamp of oldest request)
HitResult = Tuple[bool, int, float]


class RateLimitStore(ABC):
    @abstractmethod
    def hit(self, key: str, now: float, window: float, limit: int) -> HitResult:
        """Atomically prune, count and (if under limit) record one request."""

    @abstractmethod
    def count(self, key: str, now: float, window: float) -> int:
        """Requests recorded for `key` inside the window ending at `now`."""

    @abstractmethod
    def reset(self, key: str) -> None:
        ...


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._log: Dict[str, Deque[float]] = {}

    @staticmethod
    def _prune(dq: Deque[float], cutoff: float) -> None:
        while dq and dq[0] <= cutoff:
            dq.popleft()

    def hit(self, key: str, now: float, window: float, limit: int) -> HitResult:
        with self._lock:
            dq = self._log.setdefault(key, deque())
            self._prune(dq, now - window)
            oldest = dq[0] if dq else now
            if len(dq) >= limit:
                return False, len(dq), oldest
            dq.append(now)
            return True, len(dq), oldest

    def count(self, key: str, now: float, window: float) -> int:
        with self._lock:
            dq = self._log.get(key)
            if not dq:
                return 0
            self._prune(dq, now - window)
            return len(dq)

    def reset(self, key: str) -> None:
        with self._lock:
            self._log.pop(key, None)


_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = now
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end

if count < limit then
  redis.call('ZADD', key, now, member)
  redis.call('EXPIRE', key, math.ceil(window))
  return {1, count + 1, tostring(oldest_score)}
end
return {0, count, tostring(oldest_score)}
"""


class RedisRateLimitStore(RateLimitStore):
    def __init__(self, client: redis.Redis, prefix: str = "domainscope:ratelimit:"):
        self.client = client
        self.prefix = prefix
        self._script = client.register_script(_SLIDING_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisRateLimitStore":
        return cls(redis.Redis.from_url(url), **kwargs)

    def hit(self, key: str, now: float, window: float, limit: int) -> HitResult:
        member = f"{now:.6f}-{uuid.uuid4().hex}"
        admitted, count, oldest = self._script(
            keys=[self.prefix + key], args=[now, window, limit, member]
        )
        return bool(int(admitted)), int(count), float(oldest)

    def count(self, key: str, now: float, window: float) -> int:
        name = self.prefix + key
        self.client.zremrangebyscore(name, "-inf", now - window)
        return int(self.client.zcard(name))

    def reset(self, key: str) -> None:
        self.client.delete(self.prefix + key)


class RateLimiter:
    def __init__(
        self,
        limit: int = 100,
        window: float = 3600.0,
        store: Optional[RateLimitStore] = None,
        clock: Optional[Clock] = None,
    ):
        if limit < 1 or window <= 0:
            raise ValueError("Rate limit needs limit >= 1 and a positive window")
        self.limit = limit
        self.window = float(window)
        self.store = store or MemoryRateLimitStore()
        self.clock = clock or SYSTEM_CLOCK

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "RateLimiter":
        store: RateLimitStore
        if settings.redis_url:
            store = RedisRateLimitStore.from_url(settings.redis_url)
            logger.info("Rate limiter using Redis store")
        else:
            store = MemoryRateLimitStore()
        return cls(limit=settings.rate_limit, window=settings.rate_window, store=store, clock=clock)

    def _now(self) -> float:
        # Wall time, so several processes sharing Redis agree on the window
        return self.clock.now().timestamp()

    def check(self, client_id: str) -> int:
        """
        Admit one request for `client_id` or raise RateLimitExceeded.

        Returns how many requests remain in the current window.
        """
        now = self._now()
        admitted, count, oldest = self.store.hit(client_id, now, self.window, self.limit)
        if not admitted:
            retry_after = oldest + self.window - now
            logger.warning(f"Rate limit hit for {client_id}: {count}/{self.limit} in {self.window:g}s")
            raise RateLimitExceeded(client_id, self.limit, self.window, retry_after)
        return self.limit - count

    def remaining(self, client_id: str) -> int:
        return max(0, self.limit - self.store.count(client_id, self._now(), self.window))

    def reset(self, client_id: str) -> None:
        self.store.reset(client_id)
