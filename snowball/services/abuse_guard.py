"""Rate and abuse guard for snowball uploads.

Quotas live in Redis as counters with a 24 hour expiry. Every mutation is a
single atomic INCR/INCRBY, so concurrent uploads never need a lock to keep the
counters honest.
"""

import logging
import re
from uuid import UUID

import redis.asyncio as aioredis

from snowball.core.config import Settings, settings
from snowball.schemas.snowball import GuardDecision, RepositorySettings, UploaderProfile

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


def upload_counter_key(user_id: str) -> str:
    return f"ratelimit:{user_id}:uploads:daily"


def repository_adds_key(repository_id: UUID) -> str:
    return f"ratelimit:repo:{repository_id}:adds:daily"


class AbuseGuard:
    """Per-user and per-repository quotas plus per-row abuse screening."""

    def __init__(self, redis: aioredis.Redis, config: Settings = settings) -> None:
        self.redis = redis
        self.daily_upload_limit = config.snowball_daily_upload_limit
        self.max_rows_per_upload = config.snowball_max_rows_per_upload
        self.min_karma = config.snowball_min_karma
        self.min_account_age_days = config.snowball_min_account_age_days
        self.disposable_domains = {d.lower() for d in config.snowball_disposable_domains}
        self.patterns = [re.compile(p, re.IGNORECASE) for p in config.snowball_blocked_patterns]

    async def uploads_today(self, user_id: str) -> int:
        value = await self.redis.get(upload_counter_key(user_id))
        return int(value) if value else 0

    async def check(
        self,
        uploader: UploaderProfile,
        repository_id: UUID,
        candidate_count: int,
        *,
        generation: int = 0,
        repo_settings: RepositorySettings | None = None,
    ) -> GuardDecision:
        """Pre-flight check. Read-only; ``consume_upload`` takes the quota slot."""
        if uploader.karma < self.min_karma:
            return GuardDecision.deny(
                "insufficient_karma",
                f"Karma {uploader.karma} is below the required {self.min_karma}",
            )
        if uploader.account_age_days < self.min_account_age_days:
            return GuardDecision.deny(
                "account_too_new",
                f"Account must be at least {self.min_account_age_days} days old",
            )
        if candidate_count > self.max_rows_per_upload:
            return GuardDecision.deny(
                "too_many_rows",
                f"{candidate_count} rows exceeds the per-upload limit of {self.max_rows_per_upload}",
            )
        if repo_settings is not None and generation > repo_settings.max_generation_depth:
            return GuardDecision.deny(
                "max_generation_depth",
                f"Generation {generation} exceeds repository depth limit "
                f"{repo_settings.max_generation_depth}",
            )

        used = await self.uploads_today(uploader.user_id)
        if used >= self.daily_upload_limit:
            logger.warning(
                "Upload denied: user=%s repository=%s used=%d limit=%d",
                uploader.user_id,
                repository_id,
                used,
                self.daily_upload_limit,
            )
            return GuardDecision.deny(
                "daily_upload_limit",
                f"Daily upload limit reached: {used}/{self.daily_upload_limit}",
            )
        return GuardDecision.allow()

    async def consume_upload(self, user_id: str) -> GuardDecision:
        """Atomically take one upload slot, refunding it when over the limit."""
        key = upload_counter_key(user_id)
        current = await self.redis.incr(key)
        if current == 1:
            await self.redis.expire(key, DAY_SECONDS)
        if current > self.daily_upload_limit:
            await self.redis.decr(key)
            return GuardDecision.deny(
                "daily_upload_limit",
                f"Daily upload limit reached: {self.daily_upload_limit}/{self.daily_upload_limit}",
            )
        return GuardDecision.allow()

    async def release_upload(self, user_id: str) -> None:
        """Give back a slot taken for an upload that was never queued."""
        key = upload_counter_key(user_id)
        if await self.redis.decr(key) < 0:
            await self.redis.delete(key)

    def screen(self, address: str, repo_settings: RepositorySettings | None = None) -> str | None:
        """Return a rejection reason for an abusive address, or None."""
        domain = address.rsplit("@", 1)[-1]
        if domain in self.disposable_domains:
            return "disposable_domain"
        if repo_settings is not None and domain in repo_settings.blocked_domains:
            return "blocked_domain"
        for pattern in self.patterns:
            if pattern.search(address):
                return "blocked_pattern"
        return None

    async def reserve_repository_adds(
        self, repository_id: UUID, requested: int, daily_limit: int
    ) -> int:
        """Reserve up to ``requested`` adds against the repository's daily limit.

        Returns how many were granted; the overflow is refunded immediately.
        """
        if requested <= 0:
            return 0
        key = repository_adds_key(repository_id)
        total = await self.redis.incrby(key, requested)
        if total == requested:
            await self.redis.expire(key, DAY_SECONDS)
        overflow = max(0, total - daily_limit)
        granted = max(0, requested - overflow)
        refund = requested - granted
        if refund:
            await self.redis.decrby(key, refund)
            logger.info(
                "Repository %s daily add limit hit: requested=%d granted=%d",
                repository_id,
                requested,
                granted,
            )
        return granted

    async def refund_repository_adds(self, repository_id: UUID, count: int) -> None:
        if count > 0:
            await self.redis.decrby(repository_adds_key(repository_id), count)
