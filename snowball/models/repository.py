"""Repository model: a named, owned collection of email addresses around a topic."""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from snowball.models.base import Base, JSONType

if TYPE_CHECKING:
    from snowball.models.member import Member
    from snowball.models.snowball_event import SnowballEvent


class Repository(Base):
    """An email repository that grows through snowball distribution.

    Email-set changes happen only through the distribution worker and the
    membership service, both under the per-repository lock. Stats columns are
    recomputed from the member table on every committing batch, never
    incremented in place.
    """

    __tablename__ = "repositories"

    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    hashtags: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    owner_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Per-repository overrides, validated through RepositorySettings
    settings: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    # Stats
    total_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verified_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    growth_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    engagement_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    viral_multiplier: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    stats_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    members: Mapped[list["Member"]] = relationship(
        "Member",
        back_populates="repository",
        cascade="all, delete-orphan",
    )
    events: Mapped[list["SnowballEvent"]] = relationship(
        "SnowballEvent",
        back_populates="repository",
    )

    def __repr__(self) -> str:
        return f"<Repository {self.name} ({self.total_emails} emails)>"
