from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

import pytz

from ..clock import Clock, utcnow
from ..config import get_settings
from ..errors import ValidationError
from ..messaging.base import AlertChannel, AlertMessage, DeliveryResult
from ..models import ALERT_KINDS, NOTIFY_FAILED, NOTIFY_SENT
from .geo import map_link

settings = get_settings()
log = logging.getLogger(__name__)

NO_CHANNEL_REASON = "no channel applicable for this contact"


def format_datetime_with_tz(dt: datetime | None, user_timezone: str | None) -> tuple[str, str]:
    """Convert datetime to user's timezone and format it.

    Returns: (formatted_string, timezone_display)
    """
    if dt is None:
        return "Not specified", ""

    timezone_display = " UTC"
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    if user_timezone:
        try:
            tz = pytz.timezone(user_timezone)
            dt = dt.astimezone(tz)
            timezone_display = f" {dt.strftime('%Z')}"
        except pytz.UnknownTimeZoneError:
            log.warning(f"[Fanout] Unknown timezone {user_timezone}, using UTC")

    return dt.strftime('%B %d, %Y at %I:%M %p') + timezone_display, timezone_display


def build_alert_body(subject_name: str, reason: str, link: str | None, timestamp: str) -> str:
    lines = [
        "🚨 EMERGENCY ALERT",
        "",
        f"{subject_name} might be in danger!",
        "",
        f"Reason: {reason}",
    ]
    if link:
        lines.append(f"Last known location: {link}")
    lines += [
        f"Time: {timestamp}",
        "",
        "Please contact them immediately or call emergency services.",
    ]
    return "\n".join(lines)


@dataclass
class DeliveryReport:
    contact_id: int
    status: str  # NOTIFY_SENT or NOTIFY_FAILED
    channel: str | None = None
    failure_reason: str | None = None
    attempts: list[DeliveryResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == NOTIFY_SENT


class NotificationFanout:
    """Deliver one alert to every emergency contact.

    Channels are tried in order for each contact and the first success wins.
    Contacts are handled concurrently; one contact failing never affects
    another, and expected delivery failures never raise out of `notify`.
    """

    def __init__(
        self,
        channels: Sequence[AlertChannel],
        alert_store: Any,
        max_concurrent_sends: int = 20,
        clock: Clock = utcnow,
        map_link_base: str | None = None,
    ):
        self.channels = list(channels)
        self.alert_store = alert_store
        self.clock = clock
        self.map_link_base = map_link_base or settings.MAP_LINK_BASE
        self._send_slots = asyncio.Semaphore(max_concurrent_sends)

    def build_message(self, alert: Any, subject_name: str, user_timezone: str | None = None) -> AlertMessage:
        link = map_link(alert.lat, alert.lon, self.map_link_base)
        timestamp, _ = format_datetime_with_tz(alert.created_at or self.clock(), user_timezone or settings.TIMEZONE)
        return AlertMessage(
            alert_id=alert.id,
            kind=alert.kind,
            title=f"Emergency alert: {subject_name}",
            body=build_alert_body(subject_name, alert.message, link, timestamp),
            subject_name=subject_name,
            reason=alert.message,
            timestamp=timestamp,
            map_link=link,
        )

    def _check_alert(self, alert: Any) -> None:
        if alert is None or alert.id is None:
            raise ValidationError("alert must be persisted before notifying contacts")
        if alert.kind not in ALERT_KINDS:
            raise ValidationError(f"unknown alert kind: {alert.kind!r}")
        if not alert.message:
            raise ValidationError(f"alert {alert.id} has no message")

    def prepare(self, alert: Any, contacts: Sequence[Any]) -> None:
        """Create one pending ledger row per contact."""
        self._check_alert(alert)
        self.alert_store.create_pending_notifications(alert.id, [c.id for c in contacts], now=self.clock())

    async def _deliver_one(self, contact: Any, message: AlertMessage) -> DeliveryReport:
        report = DeliveryReport(contact_id=contact.id, status=NOTIFY_FAILED)
        last_failure = None

        async with self._send_slots:
            for channel in self.channels:
                try:
                    result = await channel.send(contact, message)
                except Exception as e:
                    log.warning(f"[Fanout] {channel.name} failed for contact {contact.id} "
                                f"on alert {message.alert_id}: {e}")
                    result = DeliveryResult(ok=False, channel=channel.name, error=str(e) or e.__class__.__name__)
                report.attempts.append(result)

                if result.ok:
                    report.status = NOTIFY_SENT
                    report.channel = result.channel
                    report.failure_reason = None
                    break
                if result.applicable:
                    last_failure = result

        if not report.ok:
            if last_failure is not None:
                report.channel = last_failure.channel
                report.failure_reason = last_failure.error
            else:
                report.failure_reason = NO_CHANNEL_REASON

        try:
            self.alert_store.record_delivery(
                message.alert_id,
                contact.id,
                report.status,
                report.channel,
                report.failure_reason,
                self.clock() if report.ok else None,
            )
        except Exception as e:
            log.error(f"[Fanout] Could not record delivery for contact {contact.id} "
                      f"on alert {message.alert_id}: {e}", exc_info=True)
        return report

    async def deliver(self, alert: Any, contacts: Sequence[Any], subject_name: str,
                      user_timezone: str | None = None) -> list[DeliveryReport]:
        self._check_alert(alert)
        if not contacts:
            log.warning(f"[Fanout] Alert {alert.id} has no emergency contacts to notify")
            return []

        message = self.build_message(alert, subject_name, user_timezone)
        reports = await asyncio.gather(*(self._deliver_one(c, message) for c in contacts))

        sent = sum(1 for r in reports if r.ok)
        log.info(f"[Fanout] Alert {alert.id} ({alert.kind}): notified {sent}/{len(reports)} contacts")
        return list(reports)

    async def notify(self, alert: Any, contacts: Sequence[Any], subject_name: str,
                     user_timezone: str | None = None) -> list[DeliveryReport]:
        self.prepare(alert, contacts)
        return await self.deliver(alert, contacts, subject_name, user_timezone)
