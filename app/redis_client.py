import redis.asyncio as aioredis
from app.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Driver claim locks
# ---------------------------------------------------------------------------

def driver_lock_key(driver_id: str) -> str:
    return f"driver:{driver_id}:dispatch-lock"


async def acquire_driver_lock(redis: aioredis.Redis, driver_id: str, booking_id: str, ttl_seconds: int) -> bool:
    """Claim a driver for one booking while the assignment row is written."""
    acquired = await redis.set(driver_lock_key(driver_id), booking_id, nx=True, px=ttl_seconds * 1000)
    return bool(acquired)


# Deletes the key only while it still holds the caller's booking id
_RELEASE_IF_OWNER = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def release_driver_lock(redis: aioredis.Redis, driver_id: str, booking_id: str) -> bool:
    """Release a claim taken by ``acquire_driver_lock``; a claim that expired and was
    re-taken by another booking is left alone."""
    released = await redis.eval(_RELEASE_IF_OWNER, 1, driver_lock_key(driver_id), booking_id)
    return bool(released)
