"""Best-effort Redis cache of known repository members.

A hit means the address was committed as a member; a miss means nothing and
always falls back to the database.
"""

import hashlib
import logging
from collections.abc import Iterable
from uuid import UUID

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEDUP_TTL_SECONDS = 7 * 24 * 60 * 60


def address_hash(address: str) -> str:
    return hashlib.sha256(address.encode("utf-8")).hexdigest()[:32]


def dedup_key(repository_id: UUID, address: str) -> str:
    return f"dedup:{repository_id}:{address_hash(address)}"


class DedupCache:
    """Fast-path lookup of addresses already present in a repository."""

    def __init__(self, redis: aioredis.Redis, ttl: int = DEDUP_TTL_SECONDS) -> None:
        self.redis = redis
        self.ttl = ttl

    async def known(self, repository_id: UUID, addresses: list[str]) -> set[str]:
        """Return the subset of ``addresses`` the cache knows to be members."""
        if not addresses:
            return set()
        try:
            values = await self.redis.mget([dedup_key(repository_id, a) for a in addresses])
        except RedisError:
            logger.warning("Dedup cache read failed for repository %s", repository_id)
            return set()
        return {address for address, value in zip(addresses, values, strict=True) if value}

    async def remember(self, repository_id: UUID, addresses: Iterable[str]) -> None:
        addresses = list(addresses)
        if not addresses:
            return
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for address in addresses:
                    pipe.set(dedup_key(repository_id, address), "1", ex=self.ttl)
                await pipe.execute()
        except RedisError:
            logger.warning("Dedup cache write failed for repository %s", repository_id)

    async def forget(self, repository_id: UUID, address: str) -> None:
        try:
            await self.redis.delete(dedup_key(repository_id, address))
        except RedisError:
            logger.warning("Dedup cache delete failed for repository %s", repository_id)
