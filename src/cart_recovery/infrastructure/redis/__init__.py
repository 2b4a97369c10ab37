"""Redis infrastructure with graceful degradation."""

from uuid import uuid4

import redis.asyncio as aioredis
import structlog

from cart_recovery.config import get_settings

logger = structlog.get_logger()

_redis_client: aioredis.Redis | None = None

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def connect_redis(url: str) -> aioredis.Redis | None:
    """Open a client and ping it; ``None`` when Redis is unreachable."""
    client = aioredis.from_url(
        url,
        decode_responses=False,
        socket_connect_timeout=2,
        socket_timeout=2,
        retry_on_timeout=True,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning("Redis unavailable, tick locks disabled", error=str(e))
        await client.aclose()
        return None
    logger.info("Redis connection established")
    return client


async def get_redis_client() -> aioredis.Redis | None:
    """Get or create the global async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = await connect_redis(get_settings().redis_url)
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


class TickLock:
    """Cross-instance lease so two workers do not run the same tick at once.

    Correctness never depends on it (the database constraints do that); it only
    saves duplicate work. No-ops, always granting the lease, if Redis is down.
    """

    def __init__(self, client: aioredis.Redis | None, prefix: str = "cart_recovery:tick"):
        self.client = client
        self.prefix = prefix
        self._tokens: dict[str, str] = {}

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def acquire(self, name: str, ttl_seconds: int) -> bool:
        if not self.client:
            return True
        token = uuid4().hex
        try:
            acquired = await self.client.set(self._key(name), token, nx=True, ex=ttl_seconds)
        except Exception as e:
            logger.warning("Tick lock acquire failed, running unlocked", job=name, error=str(e))
            return True
        if acquired:
            self._tokens[name] = token
            return True
        return False

    async def release(self, name: str) -> None:
        token = self._tokens.pop(name, None)
        if not self.client or token is None:
            return
        try:
            await self.client.eval(_RELEASE_SCRIPT, 1, self._key(name), token)
        except Exception as e:
            logger.warning("Tick lock release failed", job=name, error=str(e))

    async def health_check(self) -> bool:
        if not self.client:
            return False
        try:
            return await self.client.ping()
        except Exception:
            return False
