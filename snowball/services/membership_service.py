"""Member lifecycle: opt-in confirmation, review, removal and bounces."""

import logging
import secrets
from datetime import UTC, datetime, timedelta
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from snowball.core.config import Settings, settings
from snowball.core.exceptions import (
    InvalidOptInTokenError,
    MemberNotFoundError,
    NotRepositoryOwnerError,
    RepositoryNotFoundError,
)
from snowball.models.member import Member, VerificationStatus
from snowball.models.repository import Repository
from snowball.schemas.snowball import MemberRemovalResponse, MemberStatusResponse
from snowball.services.csv_ingestion import normalize_email
from snowball.services.dedup_cache import DedupCache
from snowball.services.distribution_worker import DistributionWorker
from snowball.services.lock_manager import LockManager, RetryPolicy

logger = logging.getLogger(__name__)


class MembershipService:
    """Changes member state while keeping repository stats consistent.

    Every mutation runs under the repository lock, like distribution batches.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        *,
        config: Settings = settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.locks = LockManager(redis, config)
        self.dedup = DedupCache(redis)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(config)

    async def confirm_opt_in(
        self, repository_id: UUID, address: str, token: str
    ) -> MemberStatusResponse:
        """Confirm a double opt-in with the token issued when the member was added.

        Tokens expire ``snowball_opt_in_expiry_days`` after the member was added
        and are single use.
        """
        address = normalize_email(address)

        async with self.locks.hold(repository_id, self.retry_policy):
            repository = await self._get_repository(repository_id)
            member = await self._get_member(repository_id, address)
            if (
                not member.is_active
                or member.verification_token is None
                or not secrets.compare_digest(member.verification_token, token)
            ):
                raise InvalidOptInTokenError("invalid_token")

            expires_at = _aware(member.added_at) + timedelta(
                days=self.config.snowball_opt_in_expiry_days
            )
            now = datetime.now(UTC)
            if now > expires_at:
                raise InvalidOptInTokenError("token_expired")

            member.opt_in_status = True
            member.verification_token = None
            member.verification_status = VerificationStatus.VERIFIED
            member.verified_at = now
            await DistributionWorker.refresh_repository_stats(self.db, repository)
            await self.db.commit()

        logger.info("Opt-in confirmed: repository=%s", repository_id)
        return self._status(repository, member, changed=True)

    async def approve_member(
        self, repository_id: UUID, address: str, reviewer_id: str
    ) -> MemberStatusResponse:
        """Move a pending member to verified. Only the repository owner may review."""
        return await self._review(repository_id, address, reviewer_id, approve=True)

    async def reject_member(
        self, repository_id: UUID, address: str, reviewer_id: str
    ) -> MemberStatusResponse:
        """Reject a pending member. Rejected addresses are never re-added."""
        return await self._review(repository_id, address, reviewer_id, approve=False)

    async def _review(
        self, repository_id: UUID, address: str, reviewer_id: str, *, approve: bool
    ) -> MemberStatusResponse:
        address = normalize_email(address)

        async with self.locks.hold(repository_id, self.retry_policy):
            repository = await self._get_repository(repository_id)
            if repository.owner_id != reviewer_id:
                raise NotRepositoryOwnerError(repository_id, reviewer_id)
            member = await self._get_member(repository_id, address)
            changed = (
                member.is_active and member.verification_status == VerificationStatus.PENDING
            )
            if changed:
                now = datetime.now(UTC)
                if approve:
                    member.verification_status = VerificationStatus.VERIFIED
                    member.verified_at = now
                else:
                    member.verification_status = VerificationStatus.REJECTED
                    member.verification_token = None
                    member.is_active = False
                    member.removed_at = now
                    member.removed_reason = "rejected"
                await DistributionWorker.refresh_repository_stats(self.db, repository)
            await self.db.commit()

        if changed:
            if not approve:
                await self.dedup.forget(repository_id, address)
            logger.info(
                "Member %s: repository=%s verified_emails=%d",
                "approved" if approve else "rejected",
                repository_id,
                repository.verified_emails,
            )
        return self._status(repository, member, changed=changed)

    async def remove_member(
        self, repository_id: UUID, address: str, reason: str = "unsubscribed"
    ) -> MemberRemovalResponse:
        """Deactivate a member. The address is never re-added by later uploads."""
        address = normalize_email(address)

        async with self.locks.hold(repository_id, self.retry_policy):
            repository = await self._get_repository(repository_id)
            member = await self._get_member(repository_id, address)
            removed = member.is_active
            if removed:
                member.is_active = False
                member.removed_at = datetime.now(UTC)
                member.removed_reason = reason
                await DistributionWorker.refresh_repository_stats(self.db, repository)
            await self.db.commit()

        await self.dedup.forget(repository_id, address)
        if removed:
            logger.info(
                "Member removed: repository=%s reason=%s total_emails=%d",
                repository_id,
                reason,
                repository.total_emails,
            )

        return MemberRemovalResponse(
            repository_id=repository_id,
            address=address,
            removed=removed,
            total_emails=repository.total_emails,
        )

    async def record_bounce(self, repository_id: UUID, address: str) -> Member:
        """Count a hard bounce; the member is removed once the threshold is hit."""
        address = normalize_email(address)

        async with self.locks.hold(repository_id, self.retry_policy):
            repository = await self._get_repository(repository_id)
            member = await self._get_member(repository_id, address)
            member.bounce_count += 1
            if member.is_active and member.bounce_count >= self.config.snowball_bounce_threshold:
                member.is_active = False
                member.removed_at = datetime.now(UTC)
                member.removed_reason = "bounced"
                await DistributionWorker.refresh_repository_stats(self.db, repository)
                logger.info(
                    "Member removed after %d bounces: repository=%s",
                    member.bounce_count,
                    repository_id,
                )
            await self.db.commit()

        if not member.is_active:
            await self.dedup.forget(repository_id, address)
        return member

    async def _get_repository(self, repository_id: UUID) -> Repository:
        repository = await self.db.get(Repository, repository_id)
        if repository is None or repository.is_deleted:
            raise RepositoryNotFoundError(repository_id)
        return repository

    @staticmethod
    def _status(repository: Repository, member: Member, *, changed: bool) -> MemberStatusResponse:
        return MemberStatusResponse(
            repository_id=repository.id,
            address=member.address,
            verification_status=member.verification_status.value,
            opt_in_status=member.opt_in_status,
            is_active=member.is_active,
            changed=changed,
            total_emails=repository.total_emails,
            verified_emails=repository.verified_emails,
        )

    async def _get_member(self, repository_id: UUID, address: str) -> Member:
        stmt = select(Member).where(
            Member.repository_id == repository_id,
            Member.address == address,
        )
        member = (await self.db.execute(stmt)).scalar_one_or_none()
        if member is None:
            raise MemberNotFoundError(repository_id, address)
        return member


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
