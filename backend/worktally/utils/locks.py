"""Per-principal provisioning lock.

Two tabs submitting the same wizard would otherwise both pass the
membership pre-check and race to create an organization. The lock is
held for the whole provisioning run; the TTL only matters if a worker
dies while holding it. redis-py's Lock releases through a Lua script
that deletes the key only while it still holds our token.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError

logger = logging.getLogger(__name__)


class LockNotAcquired(Exception):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock already held: {key}")


def provisioning_lock_key(principal_id: str) -> str:
    return f"lock:provisioning:{principal_id}"


@asynccontextmanager
async def redis_lock(client: redis.Redis, key: str, ttl_seconds: int) -> AsyncIterator[Lock]:
    """Hold `key` for the duration of the block or raise LockNotAcquired."""
    lock = client.lock(key, timeout=ttl_seconds, blocking=False)
    if not await lock.acquire():
        raise LockNotAcquired(key)
    logger.debug(f"Acquired {key}")
    try:
        yield lock
    finally:
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning(f"Lock {key} expired before release")
