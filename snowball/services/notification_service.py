"""Outbound notifications published after a snowball event commits."""

import json
import logging
from typing import Any

import redis.asyncio as aioredis

from snowball.models.repository import Repository
from snowball.models.snowball_event import SnowballEvent
from snowball.schemas.snowball import RepositorySettings

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "snowball:events"


def completion_payload(event: SnowballEvent, repository: Repository) -> dict[str, Any]:
    return {
        "type": "snowball.completed",
        "event_id": str(event.id),
        "repository_id": str(repository.id),
        "status": event.status.value,
        "generation": event.generation,
        "added": event.added_emails,
        "rejected": event.rejected_emails,
        "duplicates": event.duplicate_emails,
        "total_emails": repository.total_emails,
    }


class NotificationDispatcher:
    """Fire-and-forget fan-out: a pub/sub message for WebSocket listeners, a
    queued owner email and, under double opt-in, queued member invitations.
    Failures are logged and never reach the caller.
    """

    def __init__(
        self, redis: aioredis.Redis, *, email_owner: bool = True, invite_members: bool = True
    ) -> None:
        self.redis = redis
        self.email_owner = email_owner
        self.invite_members = invite_members

    async def publish_completion(self, event: SnowballEvent, repository: Repository) -> bool:
        """Returns True when every channel accepted the notification."""
        payload = completion_payload(event, repository)
        delivered = True

        try:
            await self.redis.publish(EVENTS_CHANNEL, json.dumps(payload))
        except Exception:
            delivered = False
            logger.exception("Failed to publish completion for event %s", event.id)

        if self.email_owner and repository.owner_email and event.added_emails > 0:
            try:
                from snowball.workers.tasks.snowball import notify_repository_owner

                notify_repository_owner.delay(str(event.id))
            except Exception:
                delivered = False
                logger.exception("Failed to enqueue owner notification for event %s", event.id)

        double_opt_in = RepositorySettings.for_repository(repository.settings).double_opt_in
        if self.invite_members and double_opt_in and event.added_emails > 0:
            try:
                from snowball.workers.tasks.snowball import send_opt_in_invites

                send_opt_in_invites.delay(str(event.id))
            except Exception:
                delivered = False
                logger.exception("Failed to enqueue opt-in invites for event %s", event.id)

        return delivered
