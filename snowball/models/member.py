"""Member model: one email address inside one repository."""

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from snowball.models.base import Base, JSONType

if TYPE_CHECKING:
    from snowball.models.repository import Repository


class MemberSource(str, enum.Enum):
    """How a member entered the repository."""

    MANUAL = "manual"
    CSV = "csv"
    SNOWBALL = "snowball"
    API = "api"


class VerificationStatus(str, enum.Enum):
    """Deliverability / review status of a member address."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Member(Base):
    """An email address inside a repository.

    (repository_id, address) is unique. Removal is soft: the row stays with
    ``is_active`` false so an unsubscribed address is never re-added.
    """

    __tablename__ = "repository_members"
    __table_args__ = (
        UniqueConstraint("repository_id", "address", name="uq_repository_members_repository_address"),
        Index("ix_repository_members_repository_generation", "repository_id", "snowball_generation"),
        Index("ix_repository_members_repository_active", "repository_id", "is_active"),
    )

    repository_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    address: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Provenance
    added_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[MemberSource] = mapped_column(
        Enum(
            MemberSource,
            name="member_source",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=MemberSource.MANUAL,
        nullable=False,
    )
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("snowball_events.id", ondelete="SET NULL"),
        nullable=True,
    )
    snowball_generation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    parent_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Status
    verification_status: Mapped[VerificationStatus] = mapped_column(
        Enum(
            VerificationStatus,
            name="verification_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=VerificationStatus.PENDING,
        nullable=False,
    )
    opt_in_status: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Set while a double opt-in confirmation is outstanding
    verification_token: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    engagement_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    bounce_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    removed_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Relationships
    repository: Mapped["Repository"] = relationship("Repository", back_populates="members")

    def __repr__(self) -> str:
        return f"<Member {self.address} gen={self.snowball_generation} ({self.source.value})>"
