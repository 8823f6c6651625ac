from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from ..config import settings
from ..errors import TransientDeliveryError
from .base import AlertMessage, DeliveryResult, not_applicable

log = logging.getLogger(__name__)

# Initialize Twilio client
twilio_client: Optional[Client] = None


def get_twilio_client() -> Optional[Client]:
    """Get or create Twilio client."""
    global twilio_client

    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        log.warning("[SMS] Twilio credentials not configured")
        return None

    if twilio_client is None:
        twilio_client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)

    return twilio_client


def format_phone_for_twilio(phone: str) -> str:
    """
    Format a phone number for Twilio (E.164 format).

    Args:
        phone: Phone number in various formats

    Returns:
        Phone number in E.164 format
    """
    # Remove all non-numeric characters
    digits = ''.join(filter(str.isdigit, phone))

    # Add country code if missing (assume US)
    if len(digits) == 10 and not phone.strip().startswith('+'):
        digits = '1' + digits

    return '+' + digits


def sms_text(message: AlertMessage) -> str:
    text = message.body
    if message.map_link and message.map_link not in text:
        text = f"{text}\n{message.map_link}"
    return text


class SmsChannel:
    """Emergency SMS through Twilio. The SDK is blocking, so sends run on a worker thread."""

    name = "sms"

    def __init__(self, client: Any = None, from_number: str | None = None,
                 messaging_service_sid: str | None = None):
        self._client = client
        self.from_number = from_number if from_number is not None else settings.TWILIO_FROM_NUMBER
        self.messaging_service_sid = (
            messaging_service_sid if messaging_service_sid is not None else settings.TWILIO_MESSAGING_SERVICE_SID
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_twilio_client()
        return self._client

    def _message_params(self, to_number: str, body: str) -> dict[str, str] | None:
        if self.messaging_service_sid:
            # Use messaging service (better for production)
            return {'messaging_service_sid': self.messaging_service_sid, 'to': to_number, 'body': body}
        if self.from_number:
            return {'from_': self.from_number, 'to': to_number, 'body': body}
        return None

    async def send(self, contact: Any, message: AlertMessage) -> DeliveryResult:
        if not getattr(contact, "phone", None):
            return not_applicable(self.name, "contact has no phone number")

        client = self.client
        if client is None:
            return DeliveryResult(ok=False, channel=self.name, error="Twilio client not configured")

        to_number = format_phone_for_twilio(contact.phone)
        params = self._message_params(to_number, sms_text(message))
        if params is None:
            log.error("[SMS] Neither TWILIO_MESSAGING_SERVICE_SID nor TWILIO_FROM_NUMBER configured")
            return DeliveryResult(ok=False, channel=self.name, error="no sender configured")

        try:
            instance = await asyncio.to_thread(client.messages.create, **params)
        except TwilioRestException as e:
            if e.status >= 500:
                raise TransientDeliveryError(f"Twilio {e.status}: {e.msg}") from e
            log.error(f"[SMS] Twilio rejected message to {to_number}: {e.msg}")
            return DeliveryResult(ok=False, channel=self.name, error=f"Twilio {e.status}: {e.msg}")
        except TwilioException as e:
            raise TransientDeliveryError(f"Twilio error: {e}") from e

        log.info(f"[SMS] Alert {message.alert_id} sent to {to_number}, SID: {instance.sid}")
        return DeliveryResult(ok=True, channel=self.name, provider_id=instance.sid)


class DummySmsChannel:
    name = "sms"

    async def send(self, contact: Any, message: AlertMessage) -> DeliveryResult:
        if not getattr(contact, "phone", None):
            return not_applicable(self.name, "contact has no phone number")
        log.info(f"[DUMMY SMS] to={contact.phone} alert={message.alert_id} body={sms_text(message)!r}")
        return DeliveryResult(ok=True, channel=self.name, provider_id="dummy")
