"""Pytest configuration and fixtures for the snowball engine test suite.

Provides:
- A throwaway SQLite database per test (aiosqlite, NullPool so concurrent
  workers get their own connections)
- Fake Redis (fakeredis with Lua for the lock release script)
- Disabled rate limiting
- Model factory fixtures for Repository, Member and SnowballEvent
- A distribution worker factory wired to the test database and Redis
"""

import uuid
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from snowball.core.config import Settings
from snowball.core.deps import get_db, get_redis
from snowball.core.rate_limit import limiter
from snowball.main import app
from snowball.models.base import Base
from snowball.models.member import Member, MemberSource, VerificationStatus
from snowball.models.repository import Repository
from snowball.models.snowball_event import EventStatus, SnowballEvent
from snowball.schemas.snowball import CandidateRecord, DistributionJob
from snowball.services.csv_ingestion import content_hash_for
from snowball.services.distribution_worker import DistributionWorker
from snowball.services.lock_manager import RetryPolicy
from snowball.services.notification_service import NotificationDispatcher

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
OWNER_ID = "owner-1"
UPLOADER_ID = "uploader-1"

# ---------------------------------------------------------------------------
# Disable rate limiting globally for tests
# ---------------------------------------------------------------------------
limiter.enabled = False


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database file with all tables created."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'snowball.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session for test setup (factory fixtures) and assertions."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Provide a fresh fakeredis instance per test."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


# ---------------------------------------------------------------------------
# Settings and worker
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Engine settings with small batches so multi-batch paths are exercised."""
    return Settings(
        snowball_batch_size=5,
        snowball_daily_upload_limit=5,
        snowball_max_rows_per_upload=5_000,
        snowball_daily_add_limit=1_000,
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=200, base_delay=0.002, factor=2.0, max_delay=0.02)


@pytest.fixture
def worker_factory(
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: fakeredis.aioredis.FakeRedis,
    test_settings: Settings,
    fast_policy: RetryPolicy,
) -> Callable[..., DistributionWorker]:
    """Build independent workers sharing the test database and Redis."""

    def _create(
        *,
        config: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationDispatcher | None = None,
    ) -> DistributionWorker:
        return DistributionWorker(
            session_factory,
            fake_redis,
            config=config or test_settings,
            retry_policy=retry_policy or fast_policy,
            notifier=notifier
            or NotificationDispatcher(fake_redis, email_owner=False, invite_members=False),
        )

    return _create


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: fakeredis.aioredis.FakeRedis,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with DB and Redis overridden."""

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as s:
            yield s

    async def _override_redis() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = _override_session
    app.dependency_overrides[get_redis] = _override_redis

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def plain_client() -> AsyncGenerator[AsyncClient, None]:
    """Minimal async test client with NO dependency overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def mock_process_snowball() -> Generator[MagicMock, None, None]:
    """Mock the distribution task so uploads never reach a broker."""
    with patch("snowball.workers.tasks.snowball.process_snowball") as mock_task:
        yield mock_task


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_candidates(addresses: list[str], start_row: int = 1) -> list[CandidateRecord]:
    return [
        CandidateRecord(email=address, row_index=start_row + i)
        for i, address in enumerate(addresses)
    ]


def job_for(event: SnowballEvent) -> DistributionJob:
    return DistributionJob(event_id=event.id, repository_id=event.repository_id)


# ---------------------------------------------------------------------------
# Model Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def repository_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Repository instances in the test database."""

    async def _create(
        *,
        name: str = "Rust Developers",
        owner_id: str = OWNER_ID,
        owner_email: str | None = None,
        settings: dict[str, Any] | None = None,
        is_deleted: bool = False,
    ) -> Repository:
        repository = Repository(
            name=name,
            topic="Systems programming newsletter",
            hashtags=["rust"],
            owner_id=owner_id,
            owner_email=owner_email,
            settings=settings or {},
            total_emails=0,
            verified_emails=0,
            active_emails=0,
            growth_rate=0.0,
            engagement_rate=0.0,
            viral_multiplier=0.0,
            quality_score=0.0,
            is_deleted=is_deleted,
        )
        db_session.add(repository)
        await db_session.commit()
        return repository

    return _create


@pytest.fixture
def member_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Member instances in the test database."""

    async def _create(
        repository: Repository,
        address: str,
        *,
        added_by: str = OWNER_ID,
        source: MemberSource = MemberSource.CSV,
        generation: int = 0,
        verification_status: VerificationStatus = VerificationStatus.VERIFIED,
        engagement_score: float = 0.0,
        is_active: bool = True,
        added_at: datetime | None = None,
        event_id: uuid.UUID | None = None,
        opt_in_status: bool = True,
        verification_token: str | None = None,
    ) -> Member:
        member = Member(
            repository_id=repository.id,
            address=address,
            tags=[],
            added_by=added_by,
            added_at=added_at or datetime.now(UTC),
            source=source,
            event_id=event_id,
            snowball_generation=generation,
            verification_status=verification_status,
            opt_in_status=opt_in_status,
            verification_token=verification_token,
            engagement_score=engagement_score,
            quality_score=0.8,
            bounce_count=0,
            is_active=is_active,
        )
        db_session.add(member)
        await db_session.commit()
        return member

    return _create


@pytest.fixture
def event_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates pending SnowballEvents the way an upload does."""

    async def _create(
        repository: Repository,
        addresses: list[str],
        *,
        uploader_id: str = UPLOADER_ID,
        generation: int = 0,
        parent_email: str | None = None,
        status: EventStatus = EventStatus.PENDING,
    ) -> SnowballEvent:
        candidates = make_candidates(addresses)
        event = SnowballEvent(
            repository_id=repository.id,
            uploader_id=uploader_id,
            file_name="contacts.csv",
            file_size=len(",".join(addresses)),
            checksum=uuid.uuid4().hex,
            content_hash=content_hash_for(addresses),
            generation=generation,
            parent_email=parent_email,
            candidates=[c.model_dump() for c in candidates],
            results=[],
            total_emails=len(candidates),
            processed_rows=0,
            added_emails=0,
            rejected_emails=0,
            duplicate_emails=0,
            batches_committed=0,
            lock_attempts=0,
            status=status,
        )
        db_session.add(event)
        await db_session.commit()
        return event

    return _create


@pytest_asyncio.fixture
async def repository(repository_factory: Callable[..., Any]) -> Repository:
    return await repository_factory()
