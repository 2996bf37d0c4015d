"""Growth analytics for snowball repositories using SQL aggregation."""

import logging
from datetime import UTC, datetime, time, timedelta
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from snowball.models.member import Member, MemberSource, VerificationStatus
from snowball.schemas.snowball import (
    Contributor,
    GenerationCount,
    GrowthMetrics,
    GrowthReportResponse,
    GrowthSection,
    QualityWeights,
    TimelinePoint,
    ViralMetrics,
)

logger = logging.getLogger(__name__)


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def blend_quality_score(
    verification_ratio: float,
    activity_ratio: float,
    engagement_rate: float,
    weights: QualityWeights | None = None,
) -> float:
    """Weighted average of the three quality signals, clamped to [0, 1]."""
    weights = weights or QualityWeights()
    score = (
        weights.verification * verification_ratio
        + weights.activity * activity_ratio
        + weights.engagement * engagement_rate
    )
    return max(0.0, min(1.0, score))


def decay_flagged(breakdown: list[GenerationCount]) -> bool:
    """True when some generation did not shrink relative to the one before it."""
    return any(
        later.members >= earlier.members
        for earlier, later in zip(breakdown, breakdown[1:], strict=False)
    )


def next_gen_potential(added: int, viral_coefficient: float) -> int:
    """Members the next generation is expected to bring in."""
    return round(added * viral_coefficient)


class GrowthAnalyticsService:
    """Read-only viral growth metrics computed from member records.

    Nothing here writes to the database; callers that want to persist the
    derived numbers on the repository do so themselves.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def compute_metrics(
        self,
        repository_id: UUID,
        window_days: int = 30,
        weights: QualityWeights | None = None,
    ) -> GrowthMetrics:
        since = datetime.now(UTC) - timedelta(days=window_days)
        active = Member.is_active == True  # noqa: E712

        totals_stmt = select(
            func.count().label("all_records"),
            func.count(case((active, 1), else_=None)).label("active"),
            func.count(
                case(
                    (active & (Member.verification_status == VerificationStatus.VERIFIED), 1),
                    else_=None,
                )
            ).label("verified"),
            func.count(
                case((active & (Member.source == MemberSource.SNOWBALL), 1), else_=None)
            ).label("snowball"),
            func.count(
                case((active & (Member.added_at < since), 1), else_=None)
            ).label("before_window"),
            func.count(case((Member.added_at >= since, 1), else_=None)).label("added_in_window"),
            func.avg(case((active, Member.engagement_score), else_=None)).label("engagement"),
        ).where(Member.repository_id == repository_id)
        totals = (await self.db.execute(totals_stmt)).one()

        window_stmt = select(
            func.count().label("snowball_added"),
            func.count(func.distinct(Member.added_by)).label("uploaders"),
        ).where(
            Member.repository_id == repository_id,
            Member.source == MemberSource.SNOWBALL,
            Member.is_active == True,  # noqa: E712
            Member.added_at >= since,
        )
        window = (await self.db.execute(window_stmt)).one()

        breakdown = await self.generation_breakdown(repository_id)

        all_records = totals.all_records or 0
        active_count = totals.active or 0
        verified = totals.verified or 0
        snowball_count = totals.snowball or 0
        engagement_rate = float(totals.engagement or 0.0)
        snowball_added = window.snowball_added or 0
        uploaders = window.uploaders or 0

        generation_zero = next((g.members for g in breakdown if g.generation == 0), 0)
        growth_rate = (
            _ratio(totals.added_in_window or 0, totals.before_window or 0) / window_days
            if window_days > 0
            else 0.0
        )

        quality = blend_quality_score(
            _ratio(verified, active_count),
            _ratio(active_count, all_records),
            engagement_rate,
            weights,
        )

        return GrowthMetrics(
            repository_id=repository_id,
            window_days=window_days,
            viral_coefficient=round(_ratio(snowball_added, uploaders), 4),
            amplification_rate=round(_ratio(active_count, generation_zero), 4),
            growth_rate=round(growth_rate, 6),
            engagement_rate=round(engagement_rate, 4),
            quality_score=round(quality, 4),
            generation_breakdown=breakdown,
            decay_flagged=decay_flagged(breakdown),
            total_members=active_count,
            snowball_members=snowball_count,
            organic_members=active_count - snowball_count,
            verified_members=verified,
            snowball_added_in_window=snowball_added,
            uploaders_in_window=uploaders,
        )

    async def generation_breakdown(self, repository_id: UUID) -> list[GenerationCount]:
        """Active member counts per snowball generation, ordered by generation."""
        stmt = (
            select(Member.snowball_generation, func.count().label("members"))
            .where(
                Member.repository_id == repository_id,
                Member.is_active == True,  # noqa: E712
            )
            .group_by(Member.snowball_generation)
            .order_by(Member.snowball_generation)
        )
        rows = (await self.db.execute(stmt)).all()
        return [GenerationCount(generation=row[0], members=row.members) for row in rows]

    async def top_contributors(self, repository_id: UUID, limit: int = 5) -> list[Contributor]:
        stmt = (
            select(Member.added_by, func.count().label("members_added"))
            .where(
                Member.repository_id == repository_id,
                Member.is_active == True,  # noqa: E712
            )
            .group_by(Member.added_by)
            .order_by(func.count().desc(), Member.added_by)
            .limit(limit)
        )
        rows = (await self.db.execute(stmt)).all()
        return [Contributor(user_id=row.added_by, members_added=row.members_added) for row in rows]

    async def conversion_rate(self, repository_id: UUID) -> float:
        """Share of snowball-added members that went on to be verified."""
        stmt = select(
            func.count().label("invited"),
            func.count(
                case(
                    (
                        (Member.is_active == True)  # noqa: E712
                        & (Member.verification_status == VerificationStatus.VERIFIED),
                        1,
                    ),
                    else_=None,
                )
            ).label("verified"),
        ).where(
            Member.repository_id == repository_id,
            Member.source == MemberSource.SNOWBALL,
        )
        row = (await self.db.execute(stmt)).one()
        return round(_ratio(row.verified or 0, row.invited or 0), 4)

    async def growth_timeline(self, repository_id: UUID, days: int = 30) -> list[TimelinePoint]:
        """Snowball members added per UTC day, oldest first, with empty days filled."""
        today = datetime.now(UTC).date()
        first_day = today - timedelta(days=days - 1)
        since = datetime.combine(first_day, time.min, tzinfo=UTC)

        # date() rather than CAST so SQLite also yields a calendar day
        day = func.date(Member.added_at).label("day")
        stmt = (
            select(day, func.count().label("added"))
            .where(
                Member.repository_id == repository_id,
                Member.source == MemberSource.SNOWBALL,
                Member.added_at >= since,
            )
            .group_by(day)
        )
        counts = {str(row.day): row.added for row in (await self.db.execute(stmt)).all()}

        return [
            TimelinePoint(date=d.isoformat(), added=counts.get(d.isoformat(), 0))
            for d in (first_day + timedelta(days=n) for n in range(days))
        ]

    async def growth_report(
        self,
        repository_id: UUID,
        window_days: int = 30,
        weights: QualityWeights | None = None,
    ) -> GrowthReportResponse:
        metrics = await self.compute_metrics(repository_id, window_days, weights)
        contributors = await self.top_contributors(repository_id)
        generations = len(metrics.generation_breakdown)

        return GrowthReportResponse(
            repository_id=repository_id,
            window_days=window_days,
            growth=GrowthSection(
                total=metrics.total_members,
                organic=metrics.organic_members,
                snowball=metrics.snowball_members,
                generation_breakdown=metrics.generation_breakdown,
            ),
            viral_metrics=ViralMetrics(
                coefficient=metrics.viral_coefficient,
                amplification_rate=metrics.amplification_rate,
                average_gen_size=round(_ratio(metrics.total_members, generations), 2),
                decay_flagged=metrics.decay_flagged,
            ),
            conversion_rate=await self.conversion_rate(repository_id),
            top_contributors=contributors,
            timeline=await self.growth_timeline(repository_id, window_days),
        )
