"""
Notification Service Tool
Hands invitation emails to the outbound mail provider
"""

import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass
from datetime import datetime

import httpx

from config import settings


logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Result of handing a message to the delivery provider"""
    success: bool
    recipient: str
    message_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class InvitationMessage:
    """Rendered invitation email"""
    to_email: str
    subject: str
    text_body: str
    html_body: str


INVITATION_TEMPLATE = {
    "subject": "{patient_name} invited you to their CareCircle",
    "text": """
Hi {invitee_name},

{patient_name} has invited you to help manage their medications on CareCircle.
{personal_message}
Accept the invitation here: {accept_url}

This invitation expires on {expires_at}.

- The CareCircle Team
""",
    "html": """
<p>Hi {invitee_name},</p>
<p><strong>{patient_name}</strong> has invited you to help manage their medications on CareCircle.</p>
{personal_message_html}
<p><a href="{accept_url}">Accept the invitation</a></p>
<p>This invitation expires on {expires_at}.</p>
<p>- The CareCircle Team</p>
""",
}


def render_invitation(
    to_email: str,
    patient_name: str,
    token: str,
    expires_at: datetime,
    invitee_name: Optional[str] = None,
    personal_message: Optional[str] = None
) -> InvitationMessage:
    """Render the invitation email for a pending relationship"""
    values: Dict[str, Any] = {
        "patient_name": patient_name or "A CareCircle user",
        "invitee_name": invitee_name or to_email,
        "accept_url": f"{settings.INVITATION_BASE_URL.rstrip('/')}/{token}",
        "expires_at": expires_at.strftime("%B %d, %Y"),
        "personal_message": f"\n\"{personal_message}\"\n" if personal_message else "",
        "personal_message_html": f"<blockquote>{personal_message}</blockquote>" if personal_message else "",
    }
    return InvitationMessage(
        to_email=to_email,
        subject=INVITATION_TEMPLATE["subject"].format(**values),
        text_body=INVITATION_TEMPLATE["text"].format(**values),
        html_body=INVITATION_TEMPLATE["html"].format(**values),
    )


class InvitationNotifier:
    """
    Sends invitation emails through the SendGrid v3 mail API.

    Without an API key the message is logged and reported as not delivered.
    Delivery failures are returned, never raised, so that callers can keep
    the invitation they already persisted.
    """

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.api_url = api_url or settings.SENDGRID_API_URL
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip().startswith("SG."))

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.EMAIL_TIMEOUT_SECONDS)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def send_invitation(self, message: InvitationMessage) -> NotificationResult:
        """Deliver a rendered invitation"""
        if not self.is_configured:
            logger.warning(
                f"Email provider not configured; invitation for {message.to_email} not sent"
            )
            return NotificationResult(
                success=False,
                recipient=message.to_email,
                error="Email provider not configured"
            )

        payload = {
            "personalizations": [{"to": [{"email": message.to_email}]}],
            "from": {"email": settings.EMAIL_FROM_ADDRESS, "name": settings.APP_NAME},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text_body},
                {"type": "text/html", "value": message.html_body},
            ],
        }

        try:
            client = await self._get_client()
            response = await client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key.strip()}"}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Invitation email to {message.to_email} failed: {e}")
            return NotificationResult(
                success=False,
                recipient=message.to_email,
                error=str(e)
            )

        logger.info(f"Invitation email sent to {message.to_email}")
        return NotificationResult(
            success=True,
            recipient=message.to_email,
            message_id=response.headers.get("X-Message-Id"),
            delivered_at=datetime.utcnow()
        )


# Singleton instance
invitation_notifier = InvitationNotifier()
