"""Distribution worker: applies a validated CSV upload to a repository in batches.

Each batch is committed atomically while the repository lock is held: member
inserts, recomputed repository stats and the event's row outcomes all land in
one transaction. A redelivered or re-enqueued job resumes at the event's
``processed_rows`` cursor, so nothing is applied twice.
"""

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from snowball.core.config import Settings, settings
from snowball.core.exceptions import (
    EventNotFoundError,
    LockTimeoutError,
    RepositoryNotFoundError,
)
from snowball.models.member import Member, MemberSource, VerificationStatus
from snowball.models.repository import Repository
from snowball.models.snowball_event import EventStatus, RowOutcome, SnowballEvent
from snowball.schemas.snowball import (
    CandidateRecord,
    DistributionJob,
    DistributionOutcome,
    RepositorySettings,
)
from snowball.services.abuse_guard import AbuseGuard
from snowball.services.dedup_cache import DedupCache
from snowball.services.growth_analytics import GrowthAnalyticsService
from snowball.services.lock_manager import LockManager, RetryPolicy
from snowball.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

PERSONAL_DOMAINS = frozenset(
    {"gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "icloud.com", "aol.com"}
)

ProgressCallback = Callable[[dict[str, Any]], None]


def score_candidate(record: CandidateRecord) -> float:
    """Quality score for a single candidate row in [0, 1]."""
    domain = record.email.rsplit("@", 1)[-1]
    score = 0.6
    if domain not in PERSONAL_DOMAINS:
        score += 0.2
    if record.name or record.company:
        score += 0.2
    return min(score, 1.0)


def _outcome(
    record: CandidateRecord, outcome: RowOutcome, reason: str | None = None
) -> dict[str, Any]:
    return {
        "row": record.row_index,
        "email": record.email,
        "outcome": outcome.value,
        "reason": reason,
    }


def terminal_status(event: SnowballEvent) -> EventStatus:
    """failed when an abort left nothing committed, partial for a later abort.

    A clean finish is completed when every row was added or when no batch had
    to commit (content already distributed, or nothing survived ingestion);
    otherwise it is partial.
    """
    if event.failure_reason:
        return EventStatus.FAILED if event.batches_committed == 0 else EventStatus.PARTIAL
    if event.batches_committed == 0 or event.added_emails == event.total_emails:
        return EventStatus.COMPLETED
    return EventStatus.PARTIAL


class DistributionWorker:
    """Processes ``process-snowball`` jobs.

    Built explicitly with its collaborators; the Celery task constructs one per
    run, tests construct as many independent instances as they need.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis,
        *,
        config: Settings = settings,
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.batch_size = config.snowball_batch_size
        self.guard = AbuseGuard(redis, config)
        self.locks = LockManager(redis, config)
        self.dedup = DedupCache(redis)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(config)
        self.notifier = notifier or NotificationDispatcher(redis)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process(
        self, job: DistributionJob, on_progress: ProgressCallback | None = None
    ) -> DistributionOutcome:
        """Run as many batches as possible.

        Returns ``deferred`` with ``retry_in`` when the repository lock is
        busy; the caller re-enqueues. System errors propagate.
        """
        prepared = await self._prepare(job)
        if isinstance(prepared, DistributionOutcome):
            return prepared
        candidates, repo_settings = prepared

        while True:
            async with self.session_factory() as session:
                event = await self._get_event(session, job.event_id)
                cursor = event.processed_rows
            if cursor >= len(candidates):
                break

            batch = candidates[cursor : cursor + self.batch_size]
            screened = [(record, self.guard.screen(record.email, repo_settings)) for record in batch]

            token = await self.locks.acquire(job.repository_id)
            if token is None:
                return await self._defer(job)
            members: list[str] | None = None
            try:
                members = await self._commit_batch(job, cursor, screened, repo_settings)
                # Written before release so a concurrent removal's forget() wins
                await self.dedup.remember(job.repository_id, members)
            except RepositoryNotFoundError:
                logger.warning(
                    "Repository %s disappeared while processing event %s",
                    job.repository_id,
                    job.event_id,
                )
            finally:
                await self.locks.release(job.repository_id, token)
            if members is None:
                return await self.mark_failed(job.event_id, "repository_not_found")
            if on_progress is not None:
                async with self.session_factory() as session:
                    event = await self._get_event(session, job.event_id)
                    on_progress(self._progress(event))

        return await self._finish(job.event_id, job.repository_id, repo_settings)

    async def run_to_completion(
        self,
        job: DistributionJob,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_progress: ProgressCallback | None = None,
    ) -> DistributionOutcome:
        """Drive ``process`` in-process, waiting out ``deferred`` results."""
        while True:
            outcome = await self.process(job, on_progress)
            if outcome.status != "deferred":
                return outcome
            await sleep(outcome.retry_in or 0.0)

    async def mark_failed(self, event_id: UUID, reason: str) -> DistributionOutcome:
        """Terminate an event after an unrecoverable error.

        Rows that never reached a batch are itemized as rejected with
        ``reason`` so the event still accounts for every row.
        """
        async with self.session_factory() as session:
            event = await self._get_event(session, event_id)
            if event.is_terminal:
                return self._outcome(event, "skipped")

            remaining = [
                CandidateRecord.model_validate(c) for c in event.candidates[event.processed_rows :]
            ]
            event.record_outcomes([_outcome(r, RowOutcome.REJECTED, reason) for r in remaining])
            event.processed_rows += len(remaining)
            event.failure_reason = reason
            event.status = terminal_status(event)
            event.processed_at = datetime.now(UTC)
            await session.commit()

            logger.error(
                "Snowball event failed: event=%s repository=%s reason=%s status=%s",
                event.id,
                event.repository_id,
                reason,
                event.status.value,
            )
            return self._outcome(event, event.status.value)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _prepare(
        self, job: DistributionJob
    ) -> tuple[list[CandidateRecord], RepositorySettings] | DistributionOutcome:
        async with self.session_factory() as session:
            event = await self._get_event(session, job.event_id)
            if event.is_terminal:
                logger.info("Event %s already %s, skipping redelivery", event.id, event.status.value)
                return self._outcome(event, "skipped")

            repository = await session.get(Repository, job.repository_id)
            if repository is None or repository.is_deleted or event.repository_id != repository.id:
                return await self.mark_failed(job.event_id, "repository_not_found")

            if not event.candidates and job.emails:
                event.candidates = [r.model_dump() for r in job.emails]
            candidates = [CandidateRecord.model_validate(c) for c in event.candidates]

            if event.status == EventStatus.PENDING:
                event.status = EventStatus.PROCESSING
                logger.info(
                    "Processing snowball event: event=%s repository=%s candidates=%d generation=%d",
                    event.id,
                    repository.id,
                    len(candidates),
                    event.generation,
                )
            await session.commit()

            repo_settings = RepositorySettings.for_repository(repository.settings, self.config)

            short_circuit = event.processed_rows == 0 and await self._already_distributed(
                session, event
            )
            if short_circuit:
                logger.info(
                    "Content %s already distributed to repository %s, short-circuiting event %s",
                    event.content_hash[:12],
                    repository.id,
                    event.id,
                )
                event.record_outcomes(
                    [_outcome(r, RowOutcome.DUPLICATE, "duplicate_upload") for r in candidates]
                )
                event.processed_rows = len(candidates)
                await session.commit()

        if short_circuit:
            return await self._finish(job.event_id, job.repository_id, repo_settings)
        return candidates, repo_settings

    async def _commit_batch(
        self,
        job: DistributionJob,
        cursor: int,
        screened: list[tuple[CandidateRecord, str | None]],
        repo_settings: RepositorySettings,
    ) -> list[str]:
        """Apply one batch under the lock.

        Returns the batch's addresses that are now active members, for the
        dedup cache.
        """
        async with self.session_factory() as session:
            event = await self._get_event(session, job.event_id)
            if event.processed_rows != cursor:
                # Another delivery of this job got here first
                return []
            repository = await session.get(Repository, job.repository_id)
            if repository is None or repository.is_deleted:
                raise RepositoryNotFoundError(job.repository_id)

            eligible = [record.email for record, reason in screened if reason is None]
            cached = await self.dedup.known(job.repository_id, eligible)
            existing = await self._existing_members(session, job.repository_id, eligible)
            stale = {
                a for a in cached if a not in existing or not existing[a].is_active
            }
            for address in stale:
                await self.dedup.forget(job.repository_id, address)
            if stale:
                logger.info(
                    "Evicted %d stale dedup entries for repository %s",
                    len(stale),
                    job.repository_id,
                )

            outcomes: list[dict[str, Any]] = []
            to_add: list[tuple[CandidateRecord, float]] = []
            seen: set[str] = set()
            for record, reason in screened:
                if reason is not None:
                    outcomes.append(_outcome(record, RowOutcome.REJECTED, reason))
                elif record.email in seen:
                    outcomes.append(_outcome(record, RowOutcome.DUPLICATE, "already_member"))
                elif record.email in existing:
                    if existing[record.email].is_active:
                        outcomes.append(_outcome(record, RowOutcome.DUPLICATE, "already_member"))
                    else:
                        outcomes.append(_outcome(record, RowOutcome.REJECTED, "previously_removed"))
                else:
                    score = score_candidate(record)
                    if score < repo_settings.quality_threshold:
                        outcomes.append(_outcome(record, RowOutcome.REJECTED, "low_quality"))
                    else:
                        to_add.append((record, score))
                seen.add(record.email)

            granted = await self.guard.reserve_repository_adds(
                job.repository_id, len(to_add), repo_settings.daily_add_limit
            )
            for record, _score in to_add[granted:]:
                outcomes.append(_outcome(record, RowOutcome.REJECTED, "daily_add_limit"))

            auto_approve = repo_settings.auto_approve and (
                repository.total_emails == 0
                or repository.quality_score >= repo_settings.min_quality_for_auto_approve
            )
            now = datetime.now(UTC)
            added: list[str] = []
            for record, score in to_add[:granted]:
                session.add(
                    Member(
                        repository_id=repository.id,
                        address=record.email,
                        name=record.name,
                        company=record.company,
                        tags=record.tags,
                        added_by=event.uploader_id,
                        added_at=now,
                        source=MemberSource.SNOWBALL if event.generation > 0 else MemberSource.CSV,
                        event_id=event.id,
                        snowball_generation=event.generation,
                        parent_email=event.parent_email,
                        verification_status=(
                            VerificationStatus.VERIFIED if auto_approve else VerificationStatus.PENDING
                        ),
                        verified_at=now if auto_approve else None,
                        opt_in_status=(
                            not repo_settings.double_opt_in and record.subscribed is not False
                        ),
                        verification_token=(
                            secrets.token_hex(32)
                            if repo_settings.double_opt_in and record.subscribed is not False
                            else None
                        ),
                        engagement_score=0.0,
                        quality_score=score,
                    )
                )
                outcomes.append(_outcome(record, RowOutcome.ADDED))
                added.append(record.email)
            members = added + [a for a, m in existing.items() if m.is_active]

            outcomes.sort(key=lambda o: o["row"])
            event.record_outcomes(outcomes)
            event.processed_rows = cursor + len(screened)
            event.batches_committed += 1
            event.lock_attempts = 0

            await self.refresh_repository_stats(session, repository)
            try:
                await session.commit()
            except Exception:
                await self.guard.refund_repository_adds(job.repository_id, granted)
                raise

            logger.info(
                "Batch committed: event=%s repository=%s rows=%d added=%d total_emails=%d",
                event.id,
                repository.id,
                len(screened),
                len(added),
                repository.total_emails,
            )
            return members

    async def _defer(self, job: DistributionJob) -> DistributionOutcome:
        async with self.session_factory() as session:
            event = await self._get_event(session, job.event_id)
            attempts = event.lock_attempts
            if self.retry_policy.exhausted(attempts + 1):
                await session.rollback()
                logger.warning(
                    "Lock for repository %s not acquired after %d attempts",
                    job.repository_id,
                    attempts + 1,
                )
                return await self.mark_failed(job.event_id, "lock_timeout")

            event.lock_attempts = attempts + 1
            await session.commit()
            retry_in = self.retry_policy.delay(attempts)
            logger.info(
                "Repository %s busy, deferring event %s by %.2fs (attempt %d)",
                job.repository_id,
                event.id,
                retry_in,
                attempts + 1,
            )
            outcome = self._outcome(event, "deferred")
            outcome.retry_in = retry_in
            return outcome

    async def _finish(
        self, event_id: UUID, repository_id: UUID, repo_settings: RepositorySettings
    ) -> DistributionOutcome:
        async with self.session_factory() as session:
            event = await self._get_event(session, event_id)
            if event.is_terminal:
                return self._outcome(event, "skipped")
            event.status = terminal_status(event)
            event.processed_at = datetime.now(UTC)
            await session.commit()

            accounted = event.added_emails + event.rejected_emails + event.duplicate_emails
            if accounted != event.total_emails:
                logger.error(
                    "Event %s row accounting mismatch: accounted=%d total=%d",
                    event.id,
                    accounted,
                    event.total_emails,
                )

        repository = await self._update_growth_metrics(repository_id, repo_settings)
        if repository is not None:
            await self.notifier.publish_completion(event, repository)

        logger.info(
            "Snowball event %s finished: status=%s added=%d rejected=%d duplicates=%d",
            event.id,
            event.status.value,
            event.added_emails,
            event.rejected_emails,
            event.duplicate_emails,
        )
        return self._outcome(event, event.status.value)

    async def _update_growth_metrics(
        self, repository_id: UUID, repo_settings: RepositorySettings
    ) -> Repository | None:
        """Persist analytics-derived numbers on the repository, under the lock."""
        policy = RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)
        try:
            async with self.locks.hold(repository_id, policy):
                async with self.session_factory() as session:
                    repository = await session.get(Repository, repository_id)
                    if repository is None:
                        return None
                    metrics = await GrowthAnalyticsService(session).compute_metrics(
                        repository_id, weights=repo_settings.quality_weights
                    )
                    repository.viral_multiplier = metrics.viral_coefficient
                    repository.growth_rate = metrics.growth_rate
                    repository.engagement_rate = metrics.engagement_rate
                    repository.quality_score = metrics.quality_score
                    repository.stats_updated_at = datetime.now(UTC)
                    await session.commit()
                    return repository
        except LockTimeoutError:
            logger.warning("Skipped growth metrics refresh for busy repository %s", repository_id)
            async with self.session_factory() as session:
                return await session.get(Repository, repository_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def refresh_repository_stats(session: AsyncSession, repository: Repository) -> None:
        """Recompute member counts from the store. Must run under the lock."""
        stmt = select(
            func.count().label("total"),
            func.count(
                case((Member.verification_status == VerificationStatus.VERIFIED, 1), else_=None)
            ).label("verified"),
            func.count(case((Member.opt_in_status == True, 1), else_=None)).label("opted_in"),  # noqa: E712
        ).where(
            Member.repository_id == repository.id,
            Member.is_active == True,  # noqa: E712
        )
        row = (await session.execute(stmt)).one()
        repository.total_emails = row.total or 0
        repository.verified_emails = row.verified or 0
        repository.active_emails = row.opted_in or 0
        repository.stats_updated_at = datetime.now(UTC)

    @staticmethod
    async def _existing_members(
        session: AsyncSession, repository_id: UUID, addresses: list[str]
    ) -> dict[str, Member]:
        if not addresses:
            return {}
        stmt = select(Member).where(
            Member.repository_id == repository_id,
            Member.address.in_(addresses),
        )
        result = await session.execute(stmt)
        return {member.address: member for member in result.scalars().all()}

    @staticmethod
    async def _already_distributed(session: AsyncSession, event: SnowballEvent) -> bool:
        stmt = (
            select(SnowballEvent.id)
            .where(
                SnowballEvent.repository_id == event.repository_id,
                SnowballEvent.content_hash == event.content_hash,
                SnowballEvent.status == EventStatus.COMPLETED,
                SnowballEvent.id != event.id,
            )
            .limit(1)
        )
        return (await session.execute(stmt)).scalar_one_or_none() is not None

    @staticmethod
    async def _get_event(session: AsyncSession, event_id: UUID) -> SnowballEvent:
        event = await session.get(SnowballEvent, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    @staticmethod
    def _progress(event: SnowballEvent) -> dict[str, Any]:
        return {
            "event_id": str(event.id),
            "processed": event.added_emails + event.rejected_emails + event.duplicate_emails,
            "total": event.total_emails,
            "added": event.added_emails,
            "rejected": event.rejected_emails,
            "duplicates": event.duplicate_emails,
        }

    @staticmethod
    def _outcome(event: SnowballEvent, status: str) -> DistributionOutcome:
        return DistributionOutcome(
            event_id=event.id,
            status=status,  # type: ignore[arg-type]
            processed=event.added_emails + event.rejected_emails + event.duplicate_emails,
            added=event.added_emails,
            rejected=event.rejected_emails,
            duplicates=event.duplicate_emails,
            failure_reason=event.failure_reason,
        )
