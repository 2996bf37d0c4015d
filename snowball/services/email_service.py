"""Email delivery service using Resend API."""

import logging
from typing import Any
from urllib.parse import urlencode
from uuid import UUID

import httpx

from snowball.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


def opt_in_url(repository_id: UUID, address: str, token: str) -> str:
    query = urlencode({"email": address, "token": token})
    return f"{settings.public_base_url.rstrip('/')}/repository/join/{repository_id}?{query}"


class EmailService:
    """Sends transactional emails via the Resend API."""

    async def send_growth_update(
        self,
        to_email: str,
        repository_name: str,
        added: int,
        total: int,
        generation: int,
    ) -> str | None:
        """Tell a repository owner how an upload grew their repository.

        Returns the Resend email ID on success, None on failure.
        """
        subject = f'Your "{repository_name}" repository is growing'
        text = (
            f"{added} new email(s) joined {repository_name} from a generation {generation} "
            f"snowball upload.\nThe repository now has {total} active member(s)."
        )
        return await self._send(to_email, subject, text, "snowball_update")

    async def send_opt_in_invite(
        self,
        to_email: str,
        repository_name: str,
        repository_id: UUID,
        token: str,
        inviter: str | None = None,
    ) -> str | None:
        """Ask a newly added address to confirm its membership."""
        subject = f"You're invited to join {repository_name} on Shadownews"
        invited_by = f"{inviter} added you" if inviter else "You were added"
        text = (
            f"{invited_by} to the {repository_name} email repository.\n\n"
            f"Confirm to start receiving it:\n{opt_in_url(repository_id, to_email, token)}\n\n"
            f"The link expires in {settings.snowball_opt_in_expiry_days} days. "
            "If you do nothing you will not be subscribed."
        )
        return await self._send(to_email, subject, text, "snowball_invite")

    async def _send(self, to_email: str, subject: str, text: str, category: str) -> str | None:
        """Returns the Resend email ID on success, None on failure."""
        payload: dict[str, Any] = {
            "from": settings.notification_from_address,
            "to": [to_email],
            "subject": subject,
            "text": text,
            "tags": [{"name": "category", "value": category}],
        }

        if not settings.resend_api_key:
            logger.warning("Resend API key not configured, email not sent to %s", to_email)
            return None

        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {settings.resend_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.is_success:
                    data = response.json()
                    email_id = data.get("id")
                    logger.info("Email sent: category=%s to=%s id=%s", category, to_email, email_id)
                    return str(email_id) if email_id else None
                else:
                    logger.error(
                        "Failed to send %s email: to=%s status=%s body=%s",
                        category,
                        to_email,
                        response.status_code,
                        response.text[:500],
                    )
                    return None
        except Exception:
            logger.exception("Error sending %s email to %s", category, to_email)
            return None
