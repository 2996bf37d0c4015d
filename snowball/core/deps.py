"""Dependency injection for FastAPI routes."""

from collections.abc import AsyncGenerator
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from snowball.core.config import settings
from snowball.core.database import get_async_session
from snowball.schemas.snowball import UploaderProfile
from snowball.services.membership_service import MembershipService
from snowball.services.snowball_service import SnowballService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Alias for get_async_session, overridable in tests."""
    async for session in get_async_session():
        yield session


# Shared Redis connection pool
_redis_pool: aioredis.ConnectionPool | None = None


def _get_redis_pool() -> aioredis.ConnectionPool:
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.ConnectionPool.from_url(
            str(settings.redis_url), decode_responses=True
        )
    return _redis_pool


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    """Yield a Redis client from the shared connection pool."""
    pool = _get_redis_pool()
    r = aioredis.Redis(connection_pool=pool)
    try:
        yield r
    finally:
        await r.aclose()


# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]
RedisClient = Annotated[aioredis.Redis, Depends(get_redis)]


def get_uploader(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_karma: Annotated[int, Header()] = 0,
    x_user_account_age_days: Annotated[int, Header()] = 0,
) -> UploaderProfile:
    """Uploader identity as forwarded by the API gateway.

    Authentication happens upstream; the engine only trusts these headers.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return UploaderProfile(
        user_id=x_user_id,
        email=x_user_email,
        karma=x_user_karma,
        account_age_days=x_user_account_age_days,
    )


Uploader = Annotated[UploaderProfile, Depends(get_uploader)]


def get_snowball_service(db: DBSession, redis: RedisClient) -> SnowballService:
    return SnowballService(db, redis)


def get_membership_service(db: DBSession, redis: RedisClient) -> MembershipService:
    return MembershipService(db, redis)


__all__ = [
    "DBSession",
    "RedisClient",
    "Uploader",
    "get_db",
    "get_membership_service",
    "get_redis",
    "get_snowball_service",
    "get_uploader",
]
