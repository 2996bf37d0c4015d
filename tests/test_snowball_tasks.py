"""Tests for the snowball Celery tasks.

The async implementations are called directly with the test database and
Redis so no Celery worker is needed.
"""

import json
import uuid
from collections.abc import Callable, Coroutine
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis.aioredis
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from snowball.models.repository import Repository
from snowball.models.snowball_event import EventStatus, SnowballEvent
from snowball.schemas.snowball import DistributionOutcome
from snowball.workers.tasks.snowball import (
    DEAD_LETTER_KEY,
    SnowballTask,
    _dead_letter_async,
    _notify_repository_owner_async,
    _process_snowball_async,
    _send_opt_in_invites_async,
    process_snowball,
)
from tests.conftest import job_for


class TestProcessSnowballAsync:
    @pytest.mark.asyncio
    async def test_processes_event(
        self,
        repository: Repository,
        event_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
        fake_redis: fakeredis.aioredis.FakeRedis,
    ) -> None:
        """The task body runs the worker against the given database and Redis."""
        event = await event_factory(repository, ["a@acme.io", "b@acme.io"])

        outcome = await _process_snowball_async(
            job_for(event), session_factory=session_factory, redis=fake_redis
        )

        assert outcome.status == "completed"
        assert outcome.added == 2

    @pytest.mark.asyncio
    async def test_progress_is_forwarded(
        self,
        repository: Repository,
        event_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
        fake_redis: fakeredis.aioredis.FakeRedis,
    ) -> None:
        event = await event_factory(repository, ["a@acme.io"])
        progress = MagicMock()

        await _process_snowball_async(
            job_for(event),
            on_progress=progress,
            session_factory=session_factory,
            redis=fake_redis,
        )

        progress.assert_called_once()
        assert progress.call_args.args[0]["processed"] == 1


class TestProcessSnowballTask:
    """The synchronous Celery entry point."""

    @staticmethod
    def _fake_run(outcome: DistributionOutcome) -> Callable[[Coroutine[Any, Any, Any]], Any]:
        def _run(coro: Coroutine[Any, Any, Any]) -> DistributionOutcome:
            coro.close()
            return outcome

        return _run

    def test_deferred_job_is_reenqueued(self) -> None:
        """A busy lock re-enqueues the same job with the backoff countdown."""
        job = {"event_id": str(uuid.uuid4()), "repository_id": str(uuid.uuid4()), "priority": 4}
        deferred = DistributionOutcome(
            event_id=uuid.UUID(job["event_id"]), status="deferred", retry_in=2.0
        )

        with (
            patch(
                "snowball.workers.tasks.snowball._run_async",
                side_effect=self._fake_run(deferred),
            ),
            patch.object(SnowballTask, "apply_async") as mock_apply,
        ):
            result = process_snowball.run(job)

        assert result["status"] == "deferred"
        mock_apply.assert_called_once()
        kwargs = mock_apply.call_args.kwargs
        assert kwargs["countdown"] == 2.0
        assert kwargs["priority"] == 4
        assert kwargs["kwargs"]["job"]["event_id"] == job["event_id"]
        assert "lock_attempts" not in kwargs["kwargs"]["job"]

    def test_completed_job_is_not_reenqueued(self) -> None:
        job = {"event_id": str(uuid.uuid4()), "repository_id": str(uuid.uuid4())}
        completed = DistributionOutcome(
            event_id=uuid.UUID(job["event_id"]), status="completed", added=3
        )

        with (
            patch(
                "snowball.workers.tasks.snowball._run_async",
                side_effect=self._fake_run(completed),
            ),
            patch.object(SnowballTask, "apply_async") as mock_apply,
        ):
            result = process_snowball.run(job)

        assert result["added"] == 3
        mock_apply.assert_not_called()


class TestDeadLetter:
    @pytest.mark.asyncio
    async def test_dead_letter_parks_job_and_fails_event(
        self,
        repository: Repository,
        event_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
        fake_redis: fakeredis.aioredis.FakeRedis,
    ) -> None:
        """Exhausted jobs land on the dead-letter list and their event fails."""
        event = await event_factory(repository, ["a@acme.io", "b@acme.io"])
        job = job_for(event).model_dump(mode="json")

        await _dead_letter_async(
            job,
            "OperationalError('db down')",
            "task-1",
            session_factory=session_factory,
            redis=fake_redis,
        )

        entries = await fake_redis.lrange(DEAD_LETTER_KEY, 0, -1)
        assert len(entries) == 1
        entry = json.loads(entries[0])
        assert entry["task_id"] == "task-1"
        assert entry["job"]["event_id"] == str(event.id)

        async with session_factory() as session:
            stored = await session.get(SnowballEvent, event.id)
            assert stored is not None
            assert stored.status == EventStatus.FAILED
            assert stored.failure_reason == "system_error"
            assert stored.rejected_emails == 2

    @pytest.mark.asyncio
    async def test_dead_letter_without_event_id(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_redis: fakeredis.aioredis.FakeRedis,
    ) -> None:
        await _dead_letter_async(
            {}, "ValueError()", "task-2", session_factory=session_factory, redis=fake_redis
        )
        assert await fake_redis.llen(DEAD_LETTER_KEY) == 1


class TestNotifyRepositoryOwner:
    @pytest.mark.asyncio
    async def test_sends_growth_update(
        self,
        repository_factory: Callable[..., Any],
        event_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        repository = await repository_factory(owner_email="owner@acme.io")
        event = await event_factory(repository, ["a@acme.io"], generation=1)
        email_service = MagicMock()
        email_service.send_growth_update = AsyncMock(return_value="email-123")

        result = await _notify_repository_owner_async(
            event.id, session_factory=session_factory, email_service=email_service
        )

        assert result["status"] == "sent"
        assert result["email_id"] == "email-123"
        call = email_service.send_growth_update.call_args.kwargs
        assert call["to_email"] == "owner@acme.io"
        assert call["repository_name"] == repository.name
        assert call["generation"] == 1

    @pytest.mark.asyncio
    async def test_skips_without_owner_email(
        self,
        repository: Repository,
        event_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        event = await event_factory(repository, ["a@acme.io"])
        email_service = MagicMock()
        email_service.send_growth_update = AsyncMock()

        result = await _notify_repository_owner_async(
            event.id, session_factory=session_factory, email_service=email_service
        )

        assert result == {"status": "skipped", "reason": "no_owner_email"}
        email_service.send_growth_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_skips_unknown_event(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        result = await _notify_repository_owner_async(uuid.uuid4(), session_factory=session_factory)
        assert result["reason"] == "event_not_found"

    @pytest.mark.asyncio
    async def test_failed_send(
        self,
        repository_factory: Callable[..., Any],
        event_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        repository = await repository_factory(owner_email="owner@acme.io")
        event = await event_factory(repository, ["a@acme.io"])
        email_service = MagicMock()
        email_service.send_growth_update = AsyncMock(return_value=None)

        result = await _notify_repository_owner_async(
            event.id, session_factory=session_factory, email_service=email_service
        )

        assert result["status"] == "failed"


class TestSendOptInInvites:
    @pytest.mark.asyncio
    async def test_invites_members_awaiting_opt_in(
        self,
        repository: Repository,
        event_factory: Callable[..., Any],
        member_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Only this event's members with an outstanding token are emailed."""
        event = await event_factory(
            repository, ["a@acme.io", "b@acme.io"], parent_email="p@acme.io"
        )
        await member_factory(
            repository,
            "a@acme.io",
            event_id=event.id,
            opt_in_status=False,
            verification_token="t" * 64,
        )
        await member_factory(repository, "b@acme.io", event_id=event.id)
        await member_factory(
            repository, "other@acme.io", opt_in_status=False, verification_token="u" * 64
        )
        email_service = MagicMock()
        email_service.send_opt_in_invite = AsyncMock(return_value="email-1")

        result = await _send_opt_in_invites_async(
            event.id, session_factory=session_factory, email_service=email_service
        )

        assert result["sent"] == 1
        assert result["failed"] == 0
        call = email_service.send_opt_in_invite.call_args.kwargs
        assert call["to_email"] == "a@acme.io"
        assert call["token"] == "t" * 64
        assert call["repository_id"] == repository.id
        assert call["inviter"] == "p@acme.io"

    @pytest.mark.asyncio
    async def test_counts_failed_sends(
        self,
        repository: Repository,
        event_factory: Callable[..., Any],
        member_factory: Callable[..., Any],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        event = await event_factory(repository, ["a@acme.io"])
        await member_factory(
            repository,
            "a@acme.io",
            event_id=event.id,
            opt_in_status=False,
            verification_token="t" * 64,
        )
        email_service = MagicMock()
        email_service.send_opt_in_invite = AsyncMock(return_value=None)

        result = await _send_opt_in_invites_async(
            event.id, session_factory=session_factory, email_service=email_service
        )

        assert result == {"status": "completed", "event_id": str(event.id), "sent": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_skips_unknown_event(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        result = await _send_opt_in_invites_async(uuid.uuid4(), session_factory=session_factory)
        assert result["reason"] == "event_not_found"
