"""Seed script for local snowball testing.

Creates:
- 1 repository owned by a test user (with owner email for notifications)
- 20 organic generation-0 members
- 1 completed generation-1 upload that added 6 members from 2 uploaders
- 1 unsubscribed member (to exercise previously_removed)

Usage:
    uv run python -m scripts.seed_snowball
"""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from snowball.core.database import async_session_maker
from snowball.models.member import Member, MemberSource, VerificationStatus
from snowball.models.repository import Repository
from snowball.models.snowball_event import EventStatus, SnowballEvent
from snowball.services.csv_ingestion import content_hash_for
from snowball.services.distribution_worker import DistributionWorker

# Fixed UUIDs for easy reference
REPOSITORY_ID = uuid.UUID("aaaaaaaa-0000-0000-0000-000000000001")
EVENT_ID = uuid.UUID("bbbbbbbb-0000-0000-0000-000000000001")
OWNER_ID = "seed-owner"
UPLOADERS = ["seed-uploader-1", "seed-uploader-2"]


def _member(address: str, added_by: str, added_at: datetime, **overrides: object) -> Member:
    fields: dict[str, object] = {
        "repository_id": REPOSITORY_ID,
        "address": address,
        "tags": [],
        "added_by": added_by,
        "added_at": added_at,
        "source": MemberSource.CSV,
        "snowball_generation": 0,
        "verification_status": VerificationStatus.VERIFIED,
        "opt_in_status": True,
        "engagement_score": 0.4,
        "quality_score": 0.8,
        "bounce_count": 0,
        "is_active": True,
    }
    fields.update(overrides)
    return Member(**fields)


async def seed(session: AsyncSession) -> None:
    now = datetime.now(UTC)

    # Clean previous seed data
    await session.execute(
        text("DELETE FROM repository_members WHERE repository_id = :id"),
        {"id": REPOSITORY_ID},
    )
    await session.execute(
        text("DELETE FROM snowball_events WHERE repository_id = :id"),
        {"id": REPOSITORY_ID},
    )
    await session.execute(text("DELETE FROM repositories WHERE id = :id"), {"id": REPOSITORY_ID})
    await session.flush()

    repository = Repository(
        id=REPOSITORY_ID,
        name="Rust Developers",
        topic="Systems programming newsletter",
        hashtags=["rust", "systems"],
        owner_id=OWNER_ID,
        owner_email="owner@seed.example",
        settings={"max_generation_depth": 3, "quality_threshold": 0.5},
        total_emails=0,
        verified_emails=0,
        active_emails=0,
        growth_rate=0.0,
        engagement_rate=0.0,
        viral_multiplier=0.0,
        quality_score=0.0,
    )
    session.add(repository)
    await session.flush()

    organic_at = now - timedelta(days=45)
    session.add_all(
        [_member(f"organic{i}@seed.example", OWNER_ID, organic_at) for i in range(20)]
    )
    session.add(
        _member(
            "unsubscribed@seed.example",
            OWNER_ID,
            organic_at,
            is_active=False,
            removed_at=now - timedelta(days=3),
            removed_reason="unsubscribed",
        )
    )

    addresses = [f"wave1-{i}@seed.example" for i in range(6)]
    event = SnowballEvent(
        id=EVENT_ID,
        repository_id=REPOSITORY_ID,
        uploader_id=UPLOADERS[0],
        file_name="wave1.csv",
        file_size=256,
        checksum=uuid.uuid4().hex,
        content_hash=content_hash_for(addresses),
        generation=1,
        parent_email="organic0@seed.example",
        candidates=[{"email": a, "row_index": i + 1} for i, a in enumerate(addresses)],
        results=[],
        total_emails=len(addresses),
        processed_rows=len(addresses),
        added_emails=0,
        rejected_emails=0,
        duplicate_emails=0,
        batches_committed=1,
        lock_attempts=0,
        status=EventStatus.COMPLETED,
        processed_at=now - timedelta(days=1),
    )
    event.record_outcomes(
        [
            {"row": i + 1, "email": a, "outcome": "added", "reason": None}
            for i, a in enumerate(addresses)
        ]
    )
    session.add(event)
    await session.flush()

    session.add_all(
        [
            _member(
                address,
                UPLOADERS[i % 2],
                now - timedelta(days=1),
                source=MemberSource.SNOWBALL,
                snowball_generation=1,
                parent_email="organic0@seed.example",
                event_id=EVENT_ID,
                verification_status=VerificationStatus.PENDING,
                engagement_score=0.0,
            )
            for i, address in enumerate(addresses)
        ]
    )
    await session.flush()

    await DistributionWorker.refresh_repository_stats(session, repository)
    await session.commit()


async def main() -> None:
    async with async_session_maker() as session:
        await seed(session)

    print("=" * 60)
    print("  Snowball seed data created successfully!")
    print("=" * 60)
    print()
    print(f"  Repository ID:       {REPOSITORY_ID}")
    print(f"  Owner ID:            {OWNER_ID}")
    print(f"  Generation-1 event:  {EVENT_ID}")
    print(f"  Uploaders:           {', '.join(UPLOADERS)}")
    print("  Unsubscribed email:  unsubscribed@seed.example")
    print()
    print("  Members: 20 organic + 6 snowball (viral coefficient 3.0)")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
