from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for attempt counters, lockouts and token state."""

    # Atomic check-and-increment for per-session passcode failures. The counter
    # is kept after the lock trips so the failure count stays observable.
    _OTP_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, tonumber(redis.call('GET', KEYS[2]) or '0')}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    return {1, attempts}
end

return {0, attempts}
"""

    # Rolling window kept as a sorted set of failure timestamps (ms). Entries
    # at or before now - window drop out; tripping the threshold sets the
    # lockout key and clears the set.
    _LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local now = tonumber(ARGV[4])
redis.call('ZADD', KEYS[2], now, ARGV[5])
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now - tonumber(ARGV[2]) * 1000)
local attempts = redis.call('ZCARD', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._otp_failure = self.client.register_script(self._OTP_FAILURE_SCRIPT)
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL of at least one second from an absolute expiry."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    # =========================================================================
    # Per-session passcode failures
    # =========================================================================

    async def check_otp_lock(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"otp:lock:{session_id}"))

    async def otp_failure_count(self, session_id: str) -> int:
        raw = await self.client.get(f"otp:attempts:{session_id}")
        return int(raw) if raw else 0

    async def atomic_otp_failure(
        self, session_id: str, max_attempts: int, ttl_seconds: int
    ) -> tuple[bool, int]:
        """Record a failed passcode and trip the session lock at ``max_attempts``.

        Returns:
            Tuple of (is_blocked, failed_count)
        """
        result = await self._otp_failure(
            keys=[f"otp:lock:{session_id}", f"otp:attempts:{session_id}"],
            args=[max_attempts, max(1, ttl_seconds)],
        )
        return (bool(result[0]), int(result[1]))

    async def clear_otp_attempts(self, session_id: str) -> None:
        await self.client.delete(f"otp:attempts:{session_id}", f"otp:lock:{session_id}")

    # =========================================================================
    # Per-identity login lockout
    # =========================================================================

    async def check_login_lockout(self, identity_key: str) -> bool:
        return bool(await self.client.exists(f"login:lockout:{identity_key}"))

    async def atomic_login_failure(
        self,
        identity_key: str,
        threshold: int,
        window_seconds: int,
        lockout_seconds: int,
        now: Optional[datetime] = None,
    ) -> tuple[bool, int]:
        """Record a failed login; returns (is_locked, attempts) where -1 means already locked."""
        now = now or datetime.now(timezone.utc)
        result = await self._login_failure(
            keys=[f"login:lockout:{identity_key}", f"login:attempts:{identity_key}"],
            args=[
                threshold,
                max(1, window_seconds),
                max(1, lockout_seconds),
                int(now.timestamp() * 1000),
                uuid4().hex,
            ],
        )
        return (bool(result[0]), int(result[1]))

    async def clear_login_failures(self, identity_key: str) -> None:
        await self.client.delete(f"login:attempts:{identity_key}")

    # =========================================================================
    # Tokens and federation state
    # =========================================================================

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically get and delete OAuth state to prevent replay."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None
        return data.get("provider"), expires_at
