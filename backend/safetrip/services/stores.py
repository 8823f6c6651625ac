"""Persistence interfaces used by the monitoring engine.

Each store wraps a session factory and hands back detached ORM objects
(sessions are created with expire_on_commit=False), so callers can read them
freely after the transaction closes. Trips are written back with a
compare-and-set on sync_version.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from .. import database as db
from ..clock import utcnow
from ..errors import ConcurrencyConflict
from ..models import (
    ALERT_STATUS_ACTIVE,
    FINISHED_TRIP_STATUSES,
    MONITORED_TRIP_STATUSES,
    NOTIFY_PENDING,
    TRIP_ACTIVE,
    TRIP_ALERT_TRIGGERED,
    Alert,
    ContactNotification,
    Device,
    EmergencyContact,
    Trip,
    User,
)

log = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# Columns a trip save may change; identity and creation fields never move
TRIP_MUTABLE_FIELDS = (
    "title", "start_time", "end_time", "dest_lat", "dest_lon", "dest_address", "dest_name",
    "notes", "travel_mode", "status", "current_lat", "current_lon", "current_address",
    "last_location_update", "alert_history", "emergency_contacts_notified",
    "location_timeout_minutes", "destination_tolerance_meters", "is_active", "completed_at",
)


def _compare_and_set(session: Session, trip: Trip, now: datetime) -> int:
    """Write the trip's mutable fields if its sync_version is still current. Returns the new version."""
    expected = trip.sync_version
    values = {name: getattr(trip, name) for name in TRIP_MUTABLE_FIELDS}
    values["alert_history"] = list(trip.alert_history or [])
    values["sync_version"] = expected + 1
    values["updated_at"] = now
    result = session.execute(
        update(Trip)
        .where(Trip.id == trip.id, Trip.sync_version == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict("trip", trip.id, expected)
    return expected + 1


def _add_alert_with_ledger(session: Session, alert: Alert, contact_ids: list[int], now: datetime) -> None:
    session.add(alert)
    session.flush()
    for contact_id in contact_ids:
        session.add(ContactNotification(
            alert_id=alert.id,
            contact_id=contact_id,
            status=NOTIFY_PENDING,
            created_at=now,
            updated_at=now,
        ))


class TripStore:
    def __init__(self, session_factory: SessionFactory | None = None):
        self.session_factory = session_factory or db.SessionLocal

    def create(self, trip: Trip) -> Trip:
        with self.session_factory() as session, session.begin():
            session.add(trip)
        log.info(f"[TripStore] Created trip {trip.id} for user {trip.user_id}")
        return trip

    def get(self, trip_id: int, user_id: int | None = None, include_deleted: bool = False) -> Trip | None:
        stmt = select(Trip).where(Trip.id == trip_id)
        if user_id is not None:
            stmt = stmt.where(Trip.user_id == user_id)
        if not include_deleted:
            stmt = stmt.where(Trip.is_active.is_(True))
        with self.session_factory() as session:
            return session.scalars(stmt).first()

    def list_for_user(self, user_id: int, status: str | None = None, limit: int = 20, offset: int = 0) -> list[Trip]:
        stmt = select(Trip).where(Trip.user_id == user_id, Trip.is_active.is_(True))
        if status:
            stmt = stmt.where(Trip.status == status)
        stmt = stmt.order_by(Trip.start_time.desc()).limit(limit).offset(offset)
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def find_monitorable_trips(self) -> list[Trip]:
        """Every trip the scanner still has to look at."""
        stmt = (
            select(Trip)
            .where(Trip.status.in_(MONITORED_TRIP_STATUSES), Trip.is_active.is_(True))
            .order_by(Trip.end_time)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def find_active_trips(self, now: datetime) -> list[Trip]:
        stmt = select(Trip).where(
            Trip.status == TRIP_ACTIVE,
            Trip.start_time <= now,
            Trip.end_time >= now,
            Trip.is_active.is_(True),
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def find_overdue_trips(self, now: datetime) -> list[Trip]:
        stmt = select(Trip).where(
            Trip.status.in_([TRIP_ACTIVE, TRIP_ALERT_TRIGGERED]),
            Trip.end_time < now,
            Trip.is_active.is_(True),
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def find_trips_needing_location_check(self, now: datetime) -> list[Trip]:
        """Active in-window trips whose last ping is older than their own timeout."""
        needing = []
        for trip in self.find_active_trips(now):
            last_seen = trip.last_location_update or trip.start_time
            if (now - last_seen).total_seconds() > trip.location_timeout_minutes * 60:
                needing.append(trip)
        return needing

    def find_alert_triggered_trips(self, limit: int) -> list[Trip]:
        stmt = (
            select(Trip)
            .where(Trip.status == TRIP_ALERT_TRIGGERED, Trip.is_active.is_(True))
            .order_by(Trip.updated_at.desc())
            .limit(limit)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def save(self, trip: Trip, now: datetime | None = None) -> Trip:
        """Write back a trip only if nobody else wrote it since it was read.

        Raises ConcurrencyConflict on a sync_version mismatch.
        """
        now = now or utcnow()
        with self.session_factory() as session, session.begin():
            version = _compare_and_set(session, trip, now)

        trip.sync_version = version
        trip.updated_at = now
        return trip

    def save_transition(self, trip: Trip, alerts: list[Alert], contact_ids: list[int],
                        now: datetime | None = None) -> Trip:
        """Persist a scanned trip together with the alerts it raised, in one transaction.

        Each alert gets one pending ledger row per contact. Nothing is written
        when any part fails, including a sync_version conflict.
        """
        now = now or utcnow()
        with self.session_factory() as session, session.begin():
            version = _compare_and_set(session, trip, now)
            for alert in alerts:
                _add_alert_with_ledger(session, alert, contact_ids, now)

        trip.sync_version = version
        trip.updated_at = now
        return trip

    def mark_contacts_notified(self, trip_id: int, now: datetime | None = None) -> bool:
        """Set emergency_contacts_notified once a contact was actually reached."""
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(Trip)
                .where(Trip.id == trip_id, Trip.emergency_contacts_notified.is_(False))
                .values(
                    emergency_contacts_notified=True,
                    sync_version=Trip.sync_version + 1,
                    updated_at=now or utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def soft_delete_finished(self, before: datetime) -> int:
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(Trip)
                .where(
                    Trip.status.in_(FINISHED_TRIP_STATUSES),
                    Trip.updated_at < before,
                    Trip.is_active.is_(True),
                )
                .values(is_active=False, sync_version=Trip.sync_version + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount


class UserStore:
    def __init__(self, session_factory: SessionFactory | None = None):
        self.session_factory = session_factory or db.SessionLocal

    def get_user(self, user_id: int) -> User | None:
        with self.session_factory() as session:
            return session.get(User, user_id)

    def list_auto_sos_enabled_users(self) -> list[User]:
        stmt = select(User).where(User.is_active.is_(True), User.auto_sos_enabled.is_(True)).order_by(User.id)
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def list_high_risk_users(self, since: datetime, limit: int) -> list[User]:
        """Auto-SOS users with an unresolved alert raised since `since`."""
        recent = (
            select(Alert.user_id)
            .where(Alert.status == ALERT_STATUS_ACTIVE, Alert.created_at >= since)
            .distinct()
        )
        stmt = (
            select(User)
            .where(User.is_active.is_(True), User.auto_sos_enabled.is_(True), User.id.in_(recent))
            .order_by(User.id)
            .limit(limit)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def get_emergency_contacts(self, user_id: int) -> list[EmergencyContact]:
        stmt = (
            select(EmergencyContact)
            .where(EmergencyContact.user_id == user_id)
            .order_by(EmergencyContact.is_primary.desc(), EmergencyContact.id)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def update_sos_settings(self, user_id: int, **changes) -> User | None:
        with self.session_factory() as session, session.begin():
            user = session.get(User, user_id)
            if user is None:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
        return user

    def set_default_location(self, user_id: int, lat: float, lon: float, address: str | None) -> User | None:
        return self.update_sos_settings(user_id, default_lat=lat, default_lon=lon, default_address=address)

    def count_auto_sos_users(self) -> int:
        stmt = select(func.count(User.id)).where(User.is_active.is_(True), User.auto_sos_enabled.is_(True))
        with self.session_factory() as session:
            return session.scalar(stmt) or 0


class DeviceStore:
    def __init__(self, session_factory: SessionFactory | None = None):
        self.session_factory = session_factory or db.SessionLocal

    def tokens_for_user(self, user_id: int) -> list[str]:
        stmt = select(Device.token).where(Device.user_id == user_id).order_by(Device.id)
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def remove_token(self, token: str) -> bool:
        with self.session_factory() as session, session.begin():
            result = session.execute(delete(Device).where(Device.token == token))
            return result.rowcount > 0


class AlertStore:
    def __init__(self, session_factory: SessionFactory | None = None):
        self.session_factory = session_factory or db.SessionLocal

    def create(self, alert: Alert, contact_ids: list[int] | None = None, now: datetime | None = None) -> Alert:
        """Insert an alert and its pending ledger rows in one transaction."""
        with self.session_factory() as session, session.begin():
            _add_alert_with_ledger(session, alert, contact_ids or [], now or alert.created_at or utcnow())
        return alert

    def get(self, alert_id: int, user_id: int | None = None) -> Alert | None:
        stmt = select(Alert).options(selectinload(Alert.notifications)).where(Alert.id == alert_id)
        if user_id is not None:
            stmt = stmt.where(Alert.user_id == user_id)
        with self.session_factory() as session:
            return session.scalars(stmt).first()

    def list_active_for_user(self, user_id: int) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.user_id == user_id, Alert.status == ALERT_STATUS_ACTIVE)
            .order_by(Alert.created_at.desc())
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def find_recent_unresolved(self, user_id: int, kind: str, since: datetime,
                               trip_id: int | None = None) -> Alert | None:
        stmt = select(Alert).where(
            Alert.user_id == user_id,
            Alert.kind == kind,
            Alert.status == ALERT_STATUS_ACTIVE,
            Alert.created_at >= since,
        )
        if trip_id is not None:
            stmt = stmt.where(Alert.trip_id == trip_id)
        with self.session_factory() as session:
            return session.scalars(stmt.order_by(Alert.created_at.desc())).first()

    def create_pending_notifications(self, alert_id: int, contact_ids: list[int],
                                     now: datetime | None = None) -> list[ContactNotification]:
        """One pending ledger row per contact; rows that already exist are kept as they are."""
        now = now or utcnow()
        with self.session_factory() as session, session.begin():
            existing = {
                row.contact_id: row
                for row in session.scalars(
                    select(ContactNotification).where(ContactNotification.alert_id == alert_id)
                )
            }
            rows = []
            for contact_id in contact_ids:
                row = existing.get(contact_id)
                if row is None:
                    row = ContactNotification(
                        alert_id=alert_id,
                        contact_id=contact_id,
                        status=NOTIFY_PENDING,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                rows.append(row)
        return rows

    def record_delivery(self, alert_id: int, contact_id: int, status: str, channel: str | None,
                        failure_reason: str | None, notified_at: datetime | None) -> None:
        with self.session_factory() as session, session.begin():
            session.execute(
                update(ContactNotification)
                .where(ContactNotification.alert_id == alert_id, ContactNotification.contact_id == contact_id)
                .values(
                    status=status,
                    channel=channel,
                    failure_reason=failure_reason,
                    notified_at=notified_at,
                    updated_at=notified_at or utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

    def list_notifications(self, alert_id: int) -> list[ContactNotification]:
        stmt = select(ContactNotification).where(ContactNotification.alert_id == alert_id).order_by(ContactNotification.id)
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def close(self, alert_id: int, user_id: int, status: str, reason: str | None, now: datetime) -> Alert | None:
        """Resolve or cancel an active alert. Returns None when it does not exist for this user."""
        with self.session_factory() as session, session.begin():
            alert = session.scalars(
                select(Alert).where(Alert.id == alert_id, Alert.user_id == user_id)
            ).first()
            if alert is None:
                return None
            if alert.status == ALERT_STATUS_ACTIVE:
                alert.status = status
                alert.resolved_at = now
                alert.cancel_reason = reason
                alert.updated_at = now
        return alert

    def purge_closed(self, before: datetime) -> int:
        """Delete resolved/cancelled alerts older than `before` together with their ledger rows."""
        with self.session_factory() as session, session.begin():
            stale_ids = list(session.scalars(
                select(Alert.id).where(Alert.status != ALERT_STATUS_ACTIVE, Alert.updated_at < before)
            ))
            if not stale_ids:
                return 0
            session.execute(delete(ContactNotification).where(ContactNotification.alert_id.in_(stale_ids)))
            session.execute(delete(Alert).where(Alert.id.in_(stale_ids)))
            return len(stale_ids)

    def count_active(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(Alert.id)).where(Alert.status == ALERT_STATUS_ACTIVE)) or 0

    def count_since(self, since: datetime) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(Alert.id)).where(Alert.created_at >= since)) or 0
