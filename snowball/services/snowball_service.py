"""Upload submission and event read models for snowball distribution."""

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from snowball.core.config import Settings, settings
from snowball.core.exceptions import (
    EventNotFoundError,
    RepositoryNotFoundError,
    UploadDeniedError,
)
from snowball.models.member import Member
from snowball.models.repository import Repository
from snowball.models.snowball_event import EventStatus, RowOutcome, SnowballEvent
from snowball.schemas.common import PaginatedResponse
from snowball.schemas.snowball import (
    DistributionJob,
    EventResultsResponse,
    EventStats,
    EventStatusResponse,
    EventSummary,
    GrowthReportResponse,
    RepositorySettings,
    SnowballEffect,
    UploadAcceptedResponse,
    UploaderProfile,
)
from snowball.services.abuse_guard import AbuseGuard
from snowball.services.csv_ingestion import CSVIngestionService, normalize_email
from snowball.services.growth_analytics import GrowthAnalyticsService, next_gen_potential

logger = logging.getLogger(__name__)


def enqueue_distribution(job: DistributionJob) -> None:
    """Queue a job on the Celery broker."""
    from snowball.workers.tasks.snowball import process_snowball

    process_snowball.apply_async(
        kwargs={"job": job.model_dump(mode="json")},
        priority=job.priority,
    )


class SnowballService:
    """Accepts CSV uploads and serves upload/event read models."""

    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        *,
        config: Settings = settings,
        enqueue: Callable[[DistributionJob], Any] = enqueue_distribution,
    ) -> None:
        self.db = db
        self.config = config
        self.guard = AbuseGuard(redis, config)
        self.ingestion = CSVIngestionService(config)
        self.enqueue = enqueue

    async def get_repository(self, repository_id: UUID) -> Repository:
        repository = await self.db.get(Repository, repository_id)
        if repository is None or repository.is_deleted:
            raise RepositoryNotFoundError(repository_id)
        return repository

    async def get_event(self, event_id: UUID) -> SnowballEvent:
        event = await self.db.get(SnowballEvent, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def submit_upload(
        self,
        repository_id: UUID,
        uploader: UploaderProfile,
        file_name: str,
        content: bytes,
        *,
        parent_event_id: UUID | None = None,
        priority: int | None = None,
    ) -> UploadAcceptedResponse:
        """Validate an upload, create its event and queue distribution.

        Raises CSVValidationError or UploadDeniedError before anything is
        persisted.
        """
        repository = await self.get_repository(repository_id)
        ingest = self.ingestion.ingest(content)
        repo_settings = RepositorySettings.for_repository(repository.settings, self.config)

        generation, parent_email, parent_event_id = await self.resolve_lineage(
            repository, uploader, parent_event_id
        )

        decision = await self.guard.check(
            uploader,
            repository_id,
            ingest.total_rows,
            generation=generation,
            repo_settings=repo_settings,
        )
        if not decision.allowed:
            raise UploadDeniedError(decision.reason or "denied", decision.detail)

        slot = await self.guard.consume_upload(uploader.user_id)
        if not slot.allowed:
            raise UploadDeniedError(slot.reason or "denied", slot.detail)

        try:
            event = SnowballEvent(
                repository_id=repository.id,
                uploader_id=uploader.user_id,
                file_name=file_name[:255],
                file_size=len(content),
                checksum=ingest.checksum,
                content_hash=ingest.content_hash,
                generation=generation,
                parent_event_id=parent_event_id,
                parent_email=parent_email,
                candidates=[r.model_dump() for r in ingest.records],
                results=[],
                total_emails=ingest.total_rows,
                processed_rows=0,
                added_emails=0,
                rejected_emails=0,
                duplicate_emails=0,
                batches_committed=0,
                lock_attempts=0,
                status=EventStatus.PENDING,
            )
            event.record_outcomes([e.model_dump() for e in ingest.errors])
            self.db.add(event)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self.guard.release_upload(uploader.user_id)
            raise

        job = DistributionJob(
            event_id=event.id,
            repository_id=repository.id,
            emails=ingest.records,
            priority=priority,
        )
        try:
            self.enqueue(job)
        except Exception:
            logger.exception("Failed to enqueue snowball event %s", event.id)
            await self._abandon(event, "enqueue_failed")
            await self.guard.release_upload(uploader.user_id)
            raise

        logger.info(
            "Snowball upload accepted: event=%s repository=%s uploader=%s rows=%d "
            "candidates=%d generation=%d",
            event.id,
            repository.id,
            uploader.user_id,
            ingest.total_rows,
            len(ingest.records),
            generation,
        )

        return UploadAcceptedResponse(
            event_id=event.id,
            repository_id=repository.id,
            status=event.status.value,
            generation=generation,
            total_rows=ingest.total_rows,
            candidates=len(ingest.records),
            ingest_errors=len(ingest.errors),
        )

    async def resolve_lineage(
        self,
        repository: Repository,
        uploader: UploaderProfile,
        parent_event_id: UUID | None = None,
    ) -> tuple[int, str | None, UUID | None]:
        """Work out (generation, parent_email, parent_event_id) for an upload.

        An uploader who is an active member of the repository extends the
        generation their own address arrived in; anyone else starts at 0.
        """
        uploader_email = normalize_email(uploader.email) if uploader.email else None

        if parent_event_id is not None:
            parent = await self.db.get(SnowballEvent, parent_event_id)
            if parent is None or parent.repository_id != repository.id:
                raise UploadDeniedError(
                    "invalid_parent_event",
                    f"Event {parent_event_id} is not an upload to this repository",
                )
            return parent.generation + 1, uploader_email, parent.id

        if uploader_email:
            stmt = select(Member).where(
                Member.repository_id == repository.id,
                Member.address == uploader_email,
                Member.is_active == True,  # noqa: E712
            )
            member = (await self.db.execute(stmt)).scalar_one_or_none()
            if member is not None:
                return member.snowball_generation + 1, member.address, member.event_id

        return 0, None, None

    async def event_status(self, event_id: UUID) -> EventStatusResponse:
        event = await self.get_event(event_id)
        repository = await self.db.get(Repository, event.repository_id)
        coefficient = repository.viral_multiplier if repository is not None else 0.0

        return EventStatusResponse(
            event_id=event.id,
            status=event.status.value,
            failure_reason=event.failure_reason,
            generation=event.generation,
            stats=EventStats(
                total_emails=event.total_emails,
                processed=event.added_emails + event.rejected_emails + event.duplicate_emails,
                added=event.added_emails,
                rejected=event.rejected_emails,
                duplicates=event.duplicate_emails,
            ),
            snowball_effect=SnowballEffect(
                next_gen_potential=next_gen_potential(event.added_emails, coefficient),
                viral_coefficient=coefficient,
            ),
            created_at=event.created_at,
            processed_at=event.processed_at,
        )

    async def event_results(self, event_id: UUID) -> EventResultsResponse:
        event = await self.get_event(event_id)
        return EventResultsResponse(
            event_id=event.id,
            status=event.status.value,
            results=sorted(event.results or [], key=lambda r: r["row"]),
        )

    async def list_events(
        self, repository_id: UUID, page: int = 1, page_size: int = 20
    ) -> PaginatedResponse[EventSummary]:
        await self.get_repository(repository_id)

        count_stmt = select(func.count(SnowballEvent.id)).where(
            SnowballEvent.repository_id == repository_id
        )
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(SnowballEvent)
            .where(SnowballEvent.repository_id == repository_id)
            .order_by(SnowballEvent.created_at.desc(), SnowballEvent.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        events = (await self.db.execute(stmt)).scalars().all()

        return PaginatedResponse[EventSummary](
            items=[EventSummary.model_validate(e) for e in events],
            total=total,
            page=page,
            page_size=page_size,
            pages=math.ceil(total / page_size) if total else 0,
        )

    async def growth_report(self, repository_id: UUID, window_days: int = 30) -> GrowthReportResponse:
        repository = await self.get_repository(repository_id)
        repo_settings = RepositorySettings.for_repository(repository.settings, self.config)
        return await GrowthAnalyticsService(self.db).growth_report(
            repository_id, window_days, repo_settings.quality_weights
        )

    async def _abandon(self, event: SnowballEvent, reason: str) -> None:
        """Terminate an event that never reached the queue."""
        pending = event.candidates[event.processed_rows :]
        event.record_outcomes(
            [
                {
                    "row": c["row_index"],
                    "email": c["email"],
                    "outcome": RowOutcome.REJECTED.value,
                    "reason": reason,
                }
                for c in pending
            ]
        )
        event.processed_rows = len(event.candidates)
        event.failure_reason = reason
        event.status = EventStatus.FAILED
        event.processed_at = datetime.now(UTC)
        await self.db.commit()
