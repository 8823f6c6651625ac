from __future__ import annotations

import logging
from typing import Any

from ..config import Settings
from .apns import PushChannel, get_push_sender
from .base import AlertChannel
from .resend_backend import ConsoleEmailChannel, EmailChannel
from .twilio_backend import DummySmsChannel, SmsChannel

log = logging.getLogger(__name__)


def build_channel(name: str, settings: Settings, device_store: Any) -> AlertChannel | None:
    if name == "sms":
        return SmsChannel() if settings.SMS_BACKEND.lower() == "twilio" else DummySmsChannel()
    if name == "email":
        return EmailChannel() if settings.EMAIL_BACKEND.lower() == "resend" else ConsoleEmailChannel()
    if name == "push":
        return PushChannel(get_push_sender(), device_store)
    log.warning(f"[Channels] Unknown alert channel '{name}' ignored")
    return None


def build_channels(settings: Settings, device_store: Any) -> list[AlertChannel]:
    """Channels in the configured try-order."""
    channels = []
    for name in settings.ALERT_CHANNELS_LIST:
        channel = build_channel(name, settings, device_store)
        if channel is not None:
            channels.append(channel)
    log.info(f"[Channels] Alert channels: {', '.join(c.name for c in channels) or 'none'}")
    return channels
