"""Domain exceptions raised by the snowball engine."""

from uuid import UUID


class SnowballError(Exception):
    """Base exception for snowball engine errors."""


class CSVValidationError(SnowballError):
    """Raised when an uploaded CSV is structurally unusable.

    These surface synchronously to the uploader; no event or job is created.
    """

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class UploadDeniedError(SnowballError):
    """Raised when the abuse guard denies an upload before any work is queued."""

    def __init__(self, reason: str, detail: str | None = None) -> None:
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail


class LockTimeoutError(SnowballError):
    """Raised when a repository lock could not be acquired within the retry policy."""

    def __init__(self, repository_id: UUID, attempts: int) -> None:
        super().__init__(f"Lock for repository {repository_id} not acquired after {attempts} attempts")
        self.repository_id = repository_id
        self.attempts = attempts


class RepositoryNotFoundError(SnowballError):
    """Raised when a repository does not exist or is soft-deleted."""

    def __init__(self, repository_id: UUID) -> None:
        super().__init__(f"Repository {repository_id} not found")
        self.repository_id = repository_id


class EventNotFoundError(SnowballError):
    """Raised when a snowball event does not exist."""

    def __init__(self, event_id: UUID) -> None:
        super().__init__(f"Snowball event {event_id} not found")
        self.event_id = event_id


class MemberNotFoundError(SnowballError):
    """Raised when a member address is not part of a repository."""

    def __init__(self, repository_id: UUID, address: str) -> None:
        super().__init__(f"{address} is not a member of repository {repository_id}")
        self.repository_id = repository_id
        self.address = address


class InvalidOptInTokenError(SnowballError):
    """Raised when an opt-in confirmation token is unknown, used or expired."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Opt-in confirmation failed: {reason}")
        self.reason = reason


class NotRepositoryOwnerError(SnowballError):
    """Raised when someone other than the repository owner reviews members."""

    def __init__(self, repository_id: UUID, user_id: str) -> None:
        super().__init__(f"{user_id} does not own repository {repository_id}")
        self.repository_id = repository_id
        self.user_id = user_id
