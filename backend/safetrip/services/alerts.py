"""Alert creation shared by the scanner and the manual SOS endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..clock import Clock, utcnow
from ..errors import NotFoundError, ValidationError
from ..models import (
    ALERT_KINDS,
    ALERT_MANUAL,
    ALERT_STATUS_CANCELLED,
    ALERT_STATUS_RESOLVED,
    Alert,
)
from .dedup import DedupGuard, trip_subject, user_subject
from .geo import Location
from .notifications import DeliveryReport, NotificationFanout

log = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
MAX_CANCEL_REASON_LENGTH = 200


@dataclass
class AlertOutcome:
    alert: Alert | None
    suppressed: bool = False
    reports: list[DeliveryReport] = field(default_factory=list)

    @property
    def notified(self) -> int:
        return sum(1 for r in self.reports if r.ok)


class AlertService:
    def __init__(
        self,
        alert_store: Any,
        user_store: Any,
        fanout: NotificationFanout,
        dedup: DedupGuard,
        clock: Clock = utcnow,
    ):
        self.alert_store = alert_store
        self.user_store = user_store
        self.fanout = fanout
        self.dedup = dedup
        self.clock = clock

    # Dedup ----------------------------------------------------------------------------
    def claim(self, subject: str, kind: str, user_id: int, now: datetime, trip_id: int | None = None) -> bool:
        """Reserve the right to alert on (subject, kind). False means suppress.

        The in-memory guard is checked first; a recent unresolved alert in the
        database also suppresses, so a restart does not re-alert.
        """
        if not self.dedup.try_acquire(subject, kind, now):
            return False
        recent = self.alert_store.find_recent_unresolved(user_id, kind, now - self.dedup.cooldown, trip_id=trip_id)
        if recent is not None:
            log.info(f"[Alerts] {subject}/{kind} already has unresolved alert {recent.id}, suppressing")
            return False
        return True

    def release(self, subject: str, kind: str) -> None:
        self.dedup.release(subject, kind)

    # Creation -------------------------------------------------------------------------
    def build_alert(self, user_id: int, kind: str, message: str, location: Location | None = None,
                    trip_id: int | None = None, now: datetime | None = None) -> Alert:
        """An unsaved active alert."""
        if kind not in ALERT_KINDS:
            raise ValidationError(f"unknown alert kind: {kind!r}")
        now = now or self.clock()
        return Alert(
            user_id=user_id,
            trip_id=trip_id,
            kind=kind,
            lat=location.latitude if location else None,
            lon=location.longitude if location else None,
            address=location.address if location else None,
            message=(message or kind)[:MAX_MESSAGE_LENGTH],
            created_at=now,
            updated_at=now,
        )

    def open_alert(self, user_id: int, kind: str, message: str, location: Location | None = None,
                   trip_id: int | None = None, now: datetime | None = None) -> tuple[Alert, list[Any]]:
        """Persist an alert and its pending ledger rows. Returns the alert and the contacts to notify."""
        alert = self.build_alert(user_id, kind, message, location, trip_id, now)
        contacts = self.user_store.get_emergency_contacts(user_id)
        self.alert_store.create(alert, [c.id for c in contacts], now=alert.created_at)
        log.info(f"[Alerts] Created {kind} alert {alert.id} for user {user_id}"
                 + (f" (trip {trip_id})" if trip_id else ""))
        return alert, contacts

    async def dispatch(self, alert: Alert, contacts: list[Any], user: Any) -> list[DeliveryReport]:
        subject_name = user.display_name if user is not None else "A SafeTrip user"
        user_timezone = user.timezone if user is not None else None
        return await self.fanout.deliver(alert, contacts, subject_name, user_timezone)

    async def raise_alert(self, user: Any, kind: str, message: str, location: Location | None = None,
                          trip_id: int | None = None, now: datetime | None = None) -> AlertOutcome:
        """Dedup, persist and fan out one alert."""
        now = now or self.clock()
        subject = trip_subject(trip_id) if trip_id else user_subject(user.id)
        if not self.claim(subject, kind, user.id, now, trip_id=trip_id):
            return AlertOutcome(alert=None, suppressed=True)

        try:
            alert, contacts = self.open_alert(user.id, kind, message, location, trip_id, now)
        except Exception:
            self.release(subject, kind)
            raise

        reports = await self.dispatch(alert, contacts, user)
        return AlertOutcome(alert=alert, reports=reports)

    def trigger_manual(self, user: Any, message: str | None = None, location: Location | None = None,
                       trip_id: int | None = None) -> tuple[Alert, list[Any]]:
        """Manual SOS is never deduplicated; fanout is left to the caller."""
        reason = message or "Manual SOS triggered"
        return self.open_alert(user.id, ALERT_MANUAL, reason, location, trip_id)

    # Closing --------------------------------------------------------------------------
    def _close(self, alert_id: int, user_id: int, status: str, reason: str | None) -> Alert:
        if reason is not None and len(reason) > MAX_CANCEL_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_CANCEL_REASON_LENGTH} characters")
        alert = self.alert_store.close(alert_id, user_id, status, reason, self.clock())
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        log.info(f"[Alerts] Alert {alert_id} is now {alert.status}")
        return alert

    def resolve(self, alert_id: int, user_id: int, note: str | None = None) -> Alert:
        return self._close(alert_id, user_id, ALERT_STATUS_RESOLVED, note)

    def cancel(self, alert_id: int, user_id: int, reason: str | None = None) -> Alert:
        return self._close(alert_id, user_id, ALERT_STATUS_CANCELLED, reason)
