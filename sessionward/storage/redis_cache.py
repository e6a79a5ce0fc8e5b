from __future__ import annotations

import hashlib

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for cross-process login-failure counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment; the window starts with the first failure
    _LOGIN_FAILURE_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return attempts
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    @staticmethod
    def _login_failure_key(identifier: str) -> str:
        # Identifiers are email addresses; keep them out of the keyspace
        digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
        return f"auth:login_failures:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def record_login_failure(self, identifier: str, window_seconds: int) -> int:
        result = await self._login_failure(
            keys=[self._login_failure_key(identifier)], args=[window_seconds]
        )
        return int(result)

    async def clear_login_failures(self, identifier: str) -> None:
        await self.client.delete(self._login_failure_key(identifier))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
