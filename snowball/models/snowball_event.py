"""SnowballEvent model: one CSV upload and its processing outcome."""

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from snowball.models.base import Base, JSONType

if TYPE_CHECKING:
    from snowball.models.repository import Repository


class EventStatus(str, enum.Enum):
    """Processing status of a snowball event."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({EventStatus.COMPLETED, EventStatus.PARTIAL, EventStatus.FAILED})


class RowOutcome(str, enum.Enum):
    """Outcome recorded for every row of an upload."""

    ADDED = "added"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class SnowballEvent(Base):
    """Tracks a CSV upload through the distribution pipeline.

    ``results`` holds one entry per data row of the file:
    ``{"row": int, "email": str | None, "outcome": str, "reason": str | None}``.
    Once terminal, added + rejected + duplicate equals total_emails.
    """

    __tablename__ = "snowball_events"
    __table_args__ = (
        Index("ix_snowball_events_repository_generation", "repository_id", "generation"),
        Index("ix_snowball_events_repository_content_hash", "repository_id", "content_hash"),
        Index("ix_snowball_events_uploader_created", "uploader_id", "created_at"),
    )

    repository_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("repositories.id", ondelete="RESTRICT"),
        nullable=False,
    )
    uploader_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # File metadata
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Lineage
    generation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    parent_event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("snowball_events.id", ondelete="SET NULL"),
        nullable=True,
    )
    parent_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Payload and outcomes
    candidates: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)
    results: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)

    # Aggregate stats
    total_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    added_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rejected_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicate_emails: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batches_committed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Lifecycle
    status: Mapped[EventStatus] = mapped_column(
        Enum(
            EventStatus,
            name="snowball_event_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=EventStatus.PENDING,
        nullable=False,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    lock_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    repository: Mapped["Repository"] = relationship("Repository", back_populates="events")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record_outcomes(self, outcomes: list[dict[str, Any]]) -> None:
        """Append row outcomes and bump the matching counters."""
        for outcome in outcomes:
            kind = outcome["outcome"]
            if kind == RowOutcome.ADDED.value:
                self.added_emails += 1
            elif kind == RowOutcome.DUPLICATE.value:
                self.duplicate_emails += 1
            else:
                self.rejected_emails += 1
        # Reassign so the JSON column is flagged dirty
        self.results = [*(self.results or []), *outcomes]

    def __repr__(self) -> str:
        return f"<SnowballEvent {self.id} gen={self.generation} ({self.status.value})>"
