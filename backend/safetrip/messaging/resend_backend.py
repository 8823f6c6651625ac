from __future__ import annotations

import asyncio
import html
import logging
from pathlib import Path
from typing import Any, Dict

import resend
from resend.exceptions import ResendError

from ..config import settings
from .base import AlertMessage, DeliveryResult, not_applicable

log = logging.getLogger(__name__)

# Template directory
TEMPLATES_DIR = Path(__file__).parent / "emails"


def load_template(name: str) -> str:
    """Load HTML template from emails directory."""
    template_path = TEMPLATES_DIR / f"{name}.html"
    return template_path.read_text(encoding="utf-8")


def render_template(name: str, **kwargs) -> str:
    """Load and render HTML template with variables.

    Uses string replacement instead of .format() to avoid conflicts
    with CSS curly braces in the templates.
    """
    template = load_template(name)
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


# Initialize Resend
resend_configured = False


def init_resend() -> bool:
    """Initialize Resend with API key."""
    global resend_configured

    if not settings.RESEND_API_KEY:
        log.warning("[Email] Resend API key not configured")
        return False

    if not resend_configured:
        resend.api_key = settings.RESEND_API_KEY
        resend_configured = True

    return True


def create_alert_email_html(message: AlertMessage) -> str:
    location_html = ""
    if message.map_link:
        location_html = (
            '<div class="label">Last known location</div>'
            f'<a class="button" href="{html.escape(message.map_link, quote=True)}">Open in Maps</a>'
        )
    return render_template(
        "alert",
        subject_name=html.escape(message.subject_name),
        reason=html.escape(message.reason),
        timestamp=html.escape(message.timestamp),
        location_html=location_html,
    )


def alert_email_subject(message: AlertMessage) -> str:
    return f"URGENT: {message.subject_name} might be in danger"


class EmailChannel:
    """High-priority alert email through Resend."""

    name = "email"

    def __init__(self, from_email: str | None = None):
        self.from_email = from_email or settings.RESEND_ALERTS_EMAIL

    async def send(self, contact: Any, message: AlertMessage) -> DeliveryResult:
        to_email = getattr(contact, "email", None)
        if not to_email:
            return not_applicable(self.name, "contact has no email address")

        if not init_resend():
            return DeliveryResult(ok=False, channel=self.name, error="Resend not configured")

        params: Dict[str, Any] = {
            "from": self.from_email,
            "to": [to_email],
            "subject": alert_email_subject(message),
            "html": create_alert_email_html(message),
            "text": message.body,
            # Mark as urgent
            "headers": {
                "X-Priority": "1",
                "X-MSMail-Priority": "High",
                "Importance": "high",
            },
        }

        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except ResendError as e:
            log.error(f"[Email] Resend error sending alert {message.alert_id} to {to_email}: {e}")
            return DeliveryResult(ok=False, channel=self.name, error=str(e))

        email_id = response.get("id") if isinstance(response, dict) else None
        log.info(f"[Email] Alert {message.alert_id} sent to {to_email}, ID: {email_id}")
        return DeliveryResult(ok=True, channel=self.name, provider_id=email_id)


class ConsoleEmailChannel:
    name = "email"

    async def send(self, contact: Any, message: AlertMessage) -> DeliveryResult:
        to_email = getattr(contact, "email", None)
        if not to_email:
            return not_applicable(self.name, "contact has no email address")
        log.info(f"[CONSOLE EMAIL] to={to_email} subject={alert_email_subject(message)!r}\n{message.body}")
        return DeliveryResult(ok=True, channel=self.name, provider_id="console")
