"""Per-repository distributed lock backed by Redis."""

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import UUID

import redis.asyncio as aioredis

from snowball.core.config import Settings, settings
from snowball.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

# Delete the key only if it still holds the caller's token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def lock_key(repository_id: UUID) -> str:
    return f"lock:{repository_id}"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    ``attempt`` is zero-based: ``delay(0)`` is the wait after the first failure.
    """

    max_attempts: int = 8
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (self.factor ** max(0, attempt)))

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.snowball_lock_max_attempts,
            base_delay=config.snowball_lock_base_delay_seconds,
            max_delay=config.snowball_lock_max_delay_seconds,
        )


class LockManager:
    """Mutual exclusion for one repository's member set across workers.

    Acquire is ``SET lock:{id} <token> NX EX ttl``. Release is a
    compare-and-delete so a worker whose lock expired can never release a lock
    that another worker has since taken.
    """

    def __init__(self, redis: aioredis.Redis, config: Settings = settings) -> None:
        self.redis = redis
        self.default_ttl = config.snowball_lock_ttl_seconds
        self._release = redis.register_script(RELEASE_SCRIPT)

    async def acquire(self, repository_id: UUID, ttl: int | None = None) -> str | None:
        """Try once. Returns the lock token, or None when the lock is busy."""
        token = secrets.token_hex(16)
        acquired = await self.redis.set(
            lock_key(repository_id),
            token,
            nx=True,
            ex=ttl or self.default_ttl,
        )
        if acquired:
            logger.debug("Lock acquired: repository=%s", repository_id)
            return token
        return None

    async def release(self, repository_id: UUID, token: str) -> bool:
        released = await self._release(keys=[lock_key(repository_id)], args=[token])
        if not released:
            logger.warning(
                "Lock for repository %s was no longer held by this token at release",
                repository_id,
            )
        return bool(released)

    async def owner(self, repository_id: UUID) -> str | None:
        value = await self.redis.get(lock_key(repository_id))
        return str(value) if value is not None else None

    @asynccontextmanager
    async def hold(
        self,
        repository_id: UUID,
        policy: RetryPolicy | None = None,
        *,
        ttl: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> AsyncIterator[str]:
        """Acquire with bounded retries, yield the token, always release."""
        policy = policy or RetryPolicy.from_settings()
        attempt = 0
        while True:
            token = await self.acquire(repository_id, ttl)
            if token:
                break
            if policy.exhausted(attempt + 1):
                raise LockTimeoutError(repository_id, attempt + 1)
            await sleep(policy.delay(attempt))
            attempt += 1

        try:
            yield token
        finally:
            await self.release(repository_id, token)
