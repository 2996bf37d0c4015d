"""SQLAlchemy models."""

from snowball.models.base import Base
from snowball.models.member import Member, MemberSource, VerificationStatus
from snowball.models.repository import Repository
from snowball.models.snowball_event import EventStatus, RowOutcome, SnowballEvent

__all__ = [
    # Base
    "Base",
    # Repository
    "Repository",
    # Members
    "Member",
    "MemberSource",
    "VerificationStatus",
    # Snowball events
    "SnowballEvent",
    "EventStatus",
    "RowOutcome",
]
