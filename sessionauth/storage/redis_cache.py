from __future__ import annotations

import hashlib
import math
import time
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.rate_limit import RateLimitDecision, attempt_key

logger = get_logger(__name__)


class RedisLoginRateLimiter:
    """Failed login tracking shared by every worker through Redis.

    Each (email, address) pair is one hash with ``count``, ``first`` and
    ``locked_until`` fields (epoch seconds). Keys carry a TTL, so ``sweep``
    has nothing to do.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic window reset + increment + lockout trigger
    _RECORD_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local lockout = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'first', 'locked_until')
local count = tonumber(data[1])
local first = tonumber(data[2])
local locked = tonumber(data[3])

if locked ~= nil and locked > now then
  return {count or max_attempts, 1}
end

if count == nil or first == nil or locked ~= nil or (now - first) > window then
  count = 1
  first = now
else
  count = count + 1
end

if count >= max_attempts then
  redis.call('HSET', key, 'count', count, 'first', tostring(first), 'locked_until', tostring(now + lockout))
  redis.call('EXPIRE', key, math.ceil(lockout))
  return {count, 1}
end

redis.call('HSET', key, 'count', count, 'first', tostring(first))
redis.call('HDEL', key, 'locked_until')
redis.call('EXPIRE', key, math.ceil(window))
return {count, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        lockout_seconds: int = 30 * 60,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_attempt = self.client.register_script(self._RECORD_ATTEMPT_SCRIPT)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisLoginRateLimiter":
        if not settings.redis_url:
            raise RuntimeError("REDIS_URL is required when LOGIN_RATE_LIMIT_BACKEND=redis")
        return cls(
            settings.redis_url,
            max_attempts=settings.login_max_attempts,
            window_seconds=settings.login_attempt_window_seconds,
            lockout_seconds=settings.login_lockout_seconds,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving logins."""

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _now(self) -> float:
        return time.time()

    @staticmethod
    def _key(email: str, ip_address: Optional[str]) -> str:
        normalized_email, address = attempt_key(email, ip_address)
        # Hash components so delimiters inside an address cannot collide
        digest = hashlib.sha256(f"{normalized_email}\x00{address}".encode()).hexdigest()
        return f"login_attempts:{digest}"

    async def record_failed_attempt(self, email: str, ip_address: Optional[str]) -> int:
        count, locked = await self._record_attempt(
            keys=[self._key(email, ip_address)],
            args=[self._now(), self.window_seconds, self.max_attempts, self.lockout_seconds],
        )
        if int(locked):
            logger.warning("login_locked", ip_address=ip_address or "unknown", attempts=int(count))
        return int(count)

    async def is_allowed(self, email: str, ip_address: Optional[str]) -> RateLimitDecision:
        key = self._key(email, ip_address)
        raw_count, raw_first, raw_locked = await self.client.hmget(
            key, "count", "first", "locked_until"
        )
        now = self._now()
        if raw_count is None:
            return RateLimitDecision(allowed=True, remaining_attempts=self.max_attempts)
        if raw_locked is not None:
            locked_until = float(raw_locked)
            if locked_until > now:
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=max(1, math.ceil(locked_until - now)),
                    reason="locked",
                )
            await self.client.delete(key)
            return RateLimitDecision(allowed=True, remaining_attempts=self.max_attempts)
        if raw_first is not None and now - float(raw_first) > self.window_seconds:
            await self.client.delete(key)
            return RateLimitDecision(allowed=True, remaining_attempts=self.max_attempts)
        return RateLimitDecision(
            allowed=True, remaining_attempts=max(0, self.max_attempts - int(raw_count))
        )

    async def clear_attempts(self, email: str, ip_address: Optional[str]) -> None:
        await self.client.delete(self._key(email, ip_address))

    async def get_attempt_count(self, email: str, ip_address: Optional[str]) -> int:
        raw = await self.client.hget(self._key(email, ip_address), "count")
        return int(raw) if raw is not None else 0

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        await self.client.aclose()
