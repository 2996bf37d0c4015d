"""Tests for viral growth metrics."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from snowball.models.member import Member, MemberSource, VerificationStatus
from snowball.models.repository import Repository
from snowball.schemas.snowball import GenerationCount, QualityWeights
from snowball.services.growth_analytics import (
    GrowthAnalyticsService,
    blend_quality_score,
    decay_flagged,
    next_gen_potential,
)


async def _seed(
    db: AsyncSession,
    repository: Repository,
    prefix: str,
    count: int,
    *,
    added_by: str = "owner-1",
    generation: int = 0,
    added_at: datetime | None = None,
    verification_status: VerificationStatus = VerificationStatus.VERIFIED,
    engagement_score: float = 0.0,
    is_active: bool = True,
) -> None:
    """Bulk-insert members without one commit per row."""
    db.add_all(
        [
            Member(
                repository_id=repository.id,
                address=f"{prefix}{i}@acme.io",
                tags=[],
                added_by=added_by,
                added_at=added_at or datetime.now(UTC),
                source=MemberSource.SNOWBALL if generation > 0 else MemberSource.CSV,
                snowball_generation=generation,
                verification_status=verification_status,
                opt_in_status=True,
                engagement_score=engagement_score,
                quality_score=0.8,
                bounce_count=0,
                is_active=is_active,
            )
            for i in range(count)
        ]
    )
    await db.commit()


class TestViralMetrics:
    """Coefficient, amplification and generation breakdown."""

    @pytest.mark.asyncio
    async def test_viral_coefficient(self, db_session: AsyncSession, repository: Repository) -> None:
        """40 snowball adds by 10 uploaders in the window gives a coefficient of 4.0."""
        await _seed(db_session, repository, "seed", 100)
        for n in range(10):
            await _seed(db_session, repository, f"u{n}-", 4, added_by=f"uploader-{n}", generation=1)

        metrics = await GrowthAnalyticsService(db_session).compute_metrics(repository.id)

        assert metrics.viral_coefficient == 4.0
        assert metrics.amplification_rate == 1.4
        assert metrics.total_members == 140
        assert metrics.snowball_members == 40
        assert metrics.organic_members == 100
        assert metrics.snowball_added_in_window == 40
        assert metrics.uploaders_in_window == 10
        assert metrics.generation_breakdown == [
            GenerationCount(generation=0, members=100),
            GenerationCount(generation=1, members=40),
        ]
        assert metrics.decay_flagged is False

    @pytest.mark.asyncio
    async def test_empty_repository(self, db_session: AsyncSession, repository: Repository) -> None:
        """No members means zeros, not division errors."""
        metrics = await GrowthAnalyticsService(db_session).compute_metrics(repository.id)

        assert metrics.viral_coefficient == 0.0
        assert metrics.amplification_rate == 0.0
        assert metrics.quality_score == 0.0
        assert metrics.generation_breakdown == []

    @pytest.mark.asyncio
    async def test_snowball_adds_outside_window_are_ignored(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        old = datetime.now(UTC) - timedelta(days=60)
        await _seed(db_session, repository, "old", 6, added_by="uploader-a", generation=1, added_at=old)
        await _seed(db_session, repository, "new", 3, added_by="uploader-b", generation=1)

        metrics = await GrowthAnalyticsService(db_session).compute_metrics(
            repository.id, window_days=30
        )

        assert metrics.viral_coefficient == 3.0
        assert metrics.snowball_members == 9

    @pytest.mark.asyncio
    async def test_removed_snowball_members_excluded_from_coefficient(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        """Only active snowball members count toward the coefficient."""
        await _seed(db_session, repository, "seed", 4)
        await _seed(db_session, repository, "kept", 2, added_by="uploader-a", generation=1)
        await _seed(
            db_session,
            repository,
            "dropped",
            6,
            added_by="uploader-b",
            generation=1,
            is_active=False,
        )

        metrics = await GrowthAnalyticsService(db_session).compute_metrics(repository.id)

        assert metrics.viral_coefficient == 2.0
        assert metrics.snowball_added_in_window == 2
        assert metrics.uploaders_in_window == 1

    @pytest.mark.asyncio
    async def test_growing_generation_is_flagged(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        """A generation at least as large as its parent sets decay_flagged."""
        await _seed(db_session, repository, "g0-", 10)
        await _seed(db_session, repository, "g1-", 12, added_by="uploader-x", generation=1)

        metrics = await GrowthAnalyticsService(db_session).compute_metrics(repository.id)

        assert metrics.decay_flagged is True

    @pytest.mark.asyncio
    async def test_growth_rate(self, db_session: AsyncSession, repository: Repository) -> None:
        """Members added in the window relative to the base, per day."""
        await _seed(
            db_session, repository, "base", 10, added_at=datetime.now(UTC) - timedelta(days=60)
        )
        await _seed(db_session, repository, "recent", 5)

        metrics = await GrowthAnalyticsService(db_session).compute_metrics(
            repository.id, window_days=30
        )

        assert metrics.growth_rate == pytest.approx(5 / 10 / 30, abs=1e-6)


class TestQualityScore:
    @pytest.mark.asyncio
    async def test_blend_from_member_records(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        """Verification, activity and engagement are blended with default weights."""
        await _seed(db_session, repository, "a", 1, engagement_score=0.6)
        await _seed(db_session, repository, "b", 1, engagement_score=0.3)
        await _seed(
            db_session,
            repository,
            "c",
            1,
            verification_status=VerificationStatus.PENDING,
        )
        await _seed(db_session, repository, "d", 1, is_active=False, engagement_score=1.0)

        metrics = await GrowthAnalyticsService(db_session).compute_metrics(repository.id)

        expected = 0.4 * (2 / 3) + 0.3 * (3 / 4) + 0.3 * 0.3
        assert metrics.engagement_rate == pytest.approx(0.3)
        assert metrics.quality_score == pytest.approx(expected, abs=1e-4)
        assert metrics.verified_members == 2

    def test_custom_weights(self) -> None:
        weights = QualityWeights(verification=1.0, activity=0.0, engagement=0.0)
        assert blend_quality_score(0.25, 1.0, 1.0, weights) == 0.25

    def test_weights_must_sum_to_one(self) -> None:
        with pytest.raises(ValueError):
            QualityWeights(verification=0.5, activity=0.5, engagement=0.5)

    def test_score_is_clamped(self) -> None:
        assert blend_quality_score(1.0, 1.0, 3.0) == 1.0


class TestHelpers:
    def test_decay_flagged(self) -> None:
        shrinking = [
            GenerationCount(generation=0, members=100),
            GenerationCount(generation=1, members=40),
            GenerationCount(generation=2, members=10),
        ]
        assert decay_flagged(shrinking) is False
        assert decay_flagged([*shrinking, GenerationCount(generation=3, members=10)]) is True
        assert decay_flagged([]) is False

    def test_next_gen_potential(self) -> None:
        assert next_gen_potential(10, 1.5) == 15
        assert next_gen_potential(10, 0.0) == 0


class TestGrowthReport:
    @pytest.mark.asyncio
    async def test_report_sections(self, db_session: AsyncSession, repository: Repository) -> None:
        """The report combines growth totals, viral metrics and contributors."""
        await _seed(db_session, repository, "seed", 6)
        await _seed(db_session, repository, "ann", 3, added_by="ann", generation=1)
        await _seed(db_session, repository, "bob", 1, added_by="bob", generation=1)

        report = await GrowthAnalyticsService(db_session).growth_report(repository.id)

        assert report.growth.total == 10
        assert report.growth.organic == 6
        assert report.growth.snowball == 4
        assert report.viral_metrics.coefficient == 2.0
        assert report.viral_metrics.average_gen_size == 5.0
        assert [c.user_id for c in report.top_contributors] == ["owner-1", "ann", "bob"]
        assert [c.members_added for c in report.top_contributors] == [6, 3, 1]

    @pytest.mark.asyncio
    async def test_removed_members_do_not_count(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        await _seed(db_session, repository, "live", 2)
        await _seed(db_session, repository, "gone", 5, added_by="ghost", is_active=False)

        report = await GrowthAnalyticsService(db_session).growth_report(repository.id)

        assert report.growth.total == 2
        assert [c.user_id for c in report.top_contributors] == ["owner-1"]

    @pytest.mark.asyncio
    async def test_conversion_rate(self, db_session: AsyncSession, repository: Repository) -> None:
        """Verified share of every snowball-added member, removed ones included in the base."""
        await _seed(db_session, repository, "seed", 5)
        await _seed(db_session, repository, "ok", 3, added_by="ann", generation=1)
        await _seed(
            db_session,
            repository,
            "wait",
            4,
            added_by="ann",
            generation=1,
            verification_status=VerificationStatus.PENDING,
        )
        await _seed(
            db_session, repository, "gone", 1, added_by="ann", generation=1, is_active=False
        )

        rate = await GrowthAnalyticsService(db_session).conversion_rate(repository.id)

        assert rate == pytest.approx(3 / 8, abs=1e-4)

    @pytest.mark.asyncio
    async def test_conversion_rate_without_snowball_members(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        await _seed(db_session, repository, "seed", 3)
        assert await GrowthAnalyticsService(db_session).conversion_rate(repository.id) == 0.0

    @pytest.mark.asyncio
    async def test_growth_timeline(self, db_session: AsyncSession, repository: Repository) -> None:
        """One point per day, oldest first, with days without adds reported as zero."""
        now = datetime.now(UTC)
        await _seed(db_session, repository, "today", 3, added_by="ann", generation=1)
        await _seed(
            db_session,
            repository,
            "earlier",
            2,
            added_by="bob",
            generation=1,
            added_at=now - timedelta(days=2),
        )
        await _seed(db_session, repository, "organic", 4)
        await _seed(
            db_session,
            repository,
            "ancient",
            5,
            added_by="bob",
            generation=1,
            added_at=now - timedelta(days=40),
        )

        timeline = await GrowthAnalyticsService(db_session).growth_timeline(repository.id, days=7)

        assert len(timeline) == 7
        assert timeline[-1].date == now.date().isoformat()
        assert timeline[0].date == (now.date() - timedelta(days=6)).isoformat()
        assert [p.added for p in timeline] == [0, 0, 0, 0, 2, 0, 3]

    @pytest.mark.asyncio
    async def test_report_includes_conversion_and_timeline(
        self, db_session: AsyncSession, repository: Repository
    ) -> None:
        await _seed(db_session, repository, "ann", 2, added_by="ann", generation=1)

        report = await GrowthAnalyticsService(db_session).growth_report(repository.id, 14)

        assert report.conversion_rate == 1.0
        assert len(report.timeline) == 14
        assert sum(p.added for p in report.timeline) == 2
