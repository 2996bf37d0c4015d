"""Celery tasks for snowball distribution, owner notifications and opt-in invites."""

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from snowball.core.config import settings
from snowball.core.database import async_session_maker, engine
from snowball.core.logging_config import job_id_var
from snowball.models.member import Member
from snowball.models.repository import Repository
from snowball.models.snowball_event import SnowballEvent
from snowball.schemas.snowball import DistributionJob, DistributionOutcome
from snowball.services.distribution_worker import DistributionWorker
from snowball.services.email_service import EmailService
from snowball.workers.celery_app import BaseTask, celery_app

logger = logging.getLogger(__name__)

DEAD_LETTER_KEY = "deadletter:snowball"


def _run_async[T](coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a fresh event loop, disposing DB connections after.

    asyncpg connections are bound to the loop that created them, so pooled
    connections from a previous task's loop must not be reused.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(engine.dispose())
        loop.close()


def _redis_client() -> aioredis.Redis:
    return aioredis.from_url(str(settings.redis_url), decode_responses=True)


class SnowballTask(BaseTask):
    """Dead-letters a distribution job once its retries are exhausted."""

    abstract = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        einfo: Any,
    ) -> None:
        job = kwargs.get("job") or (args[0] if args else {})
        logger.error(
            "Snowball job dead-lettered: task=%s event=%s error=%r",
            task_id,
            job.get("event_id"),
            exc,
            extra={"alert": "snowball.dead_letter"},
        )
        try:
            _run_async(_dead_letter_async(job, repr(exc), task_id))
        except Exception:
            logger.exception("Failed to dead-letter snowball task %s", task_id)


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.snowball.process_snowball",
    base=SnowballTask,
    bind=True,
    max_retries=2,
    retry_backoff=3,
)
def process_snowball(self: SnowballTask, job: dict[str, Any]) -> dict[str, Any]:
    """Distribute one uploaded CSV into its repository.

    A busy repository lock re-enqueues the job with a backoff countdown
    instead of blocking a worker slot.
    """
    parsed = DistributionJob.model_validate(job)
    token = job_id_var.set(str(parsed.event_id))
    try:
        outcome = _run_async(
            _process_snowball_async(
                parsed,
                on_progress=lambda meta: self.update_state(state="PROGRESS", meta=meta),
            )
        )
        if outcome.status == "deferred":
            self.apply_async(
                kwargs={"job": parsed.model_dump(mode="json")},
                countdown=outcome.retry_in,
                priority=parsed.priority,
            )
        return outcome.model_dump(mode="json")
    finally:
        job_id_var.reset(token)


async def _process_snowball_async(
    job: DistributionJob,
    *,
    on_progress: Callable[[dict[str, Any]], None] | None = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    redis: aioredis.Redis | None = None,
) -> DistributionOutcome:
    """Async implementation of snowball distribution."""
    client = redis or _redis_client()
    try:
        worker = DistributionWorker(session_factory, client)
        return await worker.process(job, on_progress)
    finally:
        if redis is None:
            await client.aclose()


async def _dead_letter_async(
    job: dict[str, Any],
    error: str,
    task_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    redis: aioredis.Redis | None = None,
) -> None:
    """Park the job on the dead-letter list and fail its event."""
    client = redis or _redis_client()
    try:
        entry = {
            "task_id": task_id,
            "job": job,
            "error": error,
            "failed_at": datetime.now(UTC).isoformat(),
        }
        await client.rpush(DEAD_LETTER_KEY, json.dumps(entry))

        event_id = job.get("event_id")
        if event_id:
            worker = DistributionWorker(session_factory, client)
            await worker.mark_failed(UUID(str(event_id)), "system_error")
    finally:
        if redis is None:
            await client.aclose()


# ---------------------------------------------------------------------------
# Owner notification
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.snowball.notify_repository_owner",
    base=BaseTask,
    bind=True,
)
def notify_repository_owner(self: BaseTask, event_id: str) -> dict[str, Any]:  # noqa: ARG001
    """Email the repository owner about members an upload added."""
    return _run_async(_notify_repository_owner_async(UUID(event_id)))


async def _notify_repository_owner_async(
    event_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    email_service: EmailService | None = None,
) -> dict[str, Any]:
    """Async implementation of the owner notification."""
    async with session_factory() as session:
        event = await session.get(SnowballEvent, event_id)
        if event is None:
            return {"status": "skipped", "reason": "event_not_found"}
        repository = await session.get(Repository, event.repository_id)
        if repository is None or not repository.owner_email:
            return {"status": "skipped", "reason": "no_owner_email"}

        service = email_service or EmailService()
        email_id = await service.send_growth_update(
            to_email=repository.owner_email,
            repository_name=repository.name,
            added=event.added_emails,
            total=repository.total_emails,
            generation=event.generation,
        )

    return {
        "status": "sent" if email_id else "failed",
        "event_id": str(event_id),
        "email_id": email_id,
    }


# ---------------------------------------------------------------------------
# Opt-in invitations
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.snowball.send_opt_in_invites",
    base=BaseTask,
    bind=True,
)
def send_opt_in_invites(self: BaseTask, event_id: str) -> dict[str, Any]:  # noqa: ARG001
    """Email every member an upload added that still has to confirm opt-in."""
    return _run_async(_send_opt_in_invites_async(UUID(event_id)))


async def _send_opt_in_invites_async(
    event_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    email_service: EmailService | None = None,
) -> dict[str, Any]:
    """Async implementation of the opt-in invitations."""
    async with session_factory() as session:
        event = await session.get(SnowballEvent, event_id)
        if event is None:
            return {"status": "skipped", "reason": "event_not_found"}
        repository = await session.get(Repository, event.repository_id)
        if repository is None:
            return {"status": "skipped", "reason": "repository_not_found"}

        stmt = select(Member).where(
            Member.event_id == event_id,
            Member.is_active == True,  # noqa: E712
            Member.opt_in_status == False,  # noqa: E712
            Member.verification_token.is_not(None),
        )
        pending = (await session.execute(stmt)).scalars().all()

        service = email_service or EmailService()
        sent = failed = 0
        for member in pending:
            email_id = await service.send_opt_in_invite(
                to_email=member.address,
                repository_name=repository.name,
                repository_id=repository.id,
                token=member.verification_token or "",
                inviter=event.parent_email,
            )
            if email_id:
                sent += 1
            else:
                failed += 1

    logger.info("Opt-in invites for event %s: sent=%d failed=%d", event_id, sent, failed)
    return {"status": "completed", "event_id": str(event_id), "sent": sent, "failed": failed}
