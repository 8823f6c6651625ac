"""User-driven trip mutations: create, edit, location pings and explicit status actions."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from ..clock import Clock, to_naive_utc, utcnow
from ..errors import ConcurrencyConflict, InvalidTransition, NotFoundError, ValidationError
from ..models import (
    FINISHED_TRIP_STATUSES,
    TRAVEL_MODES,
    TRIP_ACTIVE,
    TRIP_ALERT_TRIGGERED,
    TRIP_CANCELLED,
    TRIP_COMPLETED,
    TRIP_SCHEDULED,
    Trip,
)
from .geo import is_valid_coordinate
from .stores import TripStore
from .trip_state import check_trip_times, check_user_action, history_entry

log = logging.getLogger(__name__)

MAX_START_IN_PAST = timedelta(days=365)
LOCATION_TIMEOUT_RANGE = (5, 180)
DESTINATION_TOLERANCE_RANGE = (50, 5000)
TEXT_LIMITS = {"title": 200, "dest_address": 500, "dest_name": 100, "notes": 1000}

EDITABLE_FIELDS = (
    "title", "start_time", "end_time", "dest_lat", "dest_lon", "dest_address", "dest_name",
    "notes", "travel_mode", "location_timeout_minutes", "destination_tolerance_meters",
)


def validate_trip_fields(fields: dict[str, Any], now: datetime, creating: bool = False) -> None:
    """Raise ValidationError for anything a stored trip must never contain."""
    start, end = fields.get("start_time"), fields.get("end_time")
    if start is None or end is None:
        raise ValidationError("start_time and end_time are required")
    if not check_trip_times(start, end):
        raise ValidationError("end_time must be after start_time")
    if creating and start < now - MAX_START_IN_PAST:
        raise ValidationError("start_time cannot be more than one year in the past")

    title = fields.get("title")
    if not title or not title.strip():
        raise ValidationError("title is required")
    for name, limit in TEXT_LIMITS.items():
        value = fields.get(name)
        if value is not None and len(value) > limit:
            raise ValidationError(f"{name} must be at most {limit} characters")

    if not is_valid_coordinate(fields.get("dest_lat"), fields.get("dest_lon")):
        raise ValidationError("destination coordinates are out of range")
    if fields.get("travel_mode") not in TRAVEL_MODES:
        raise ValidationError(f"travel_mode must be one of {', '.join(TRAVEL_MODES)}")

    low, high = LOCATION_TIMEOUT_RANGE
    if not low <= fields.get("location_timeout_minutes", 30) <= high:
        raise ValidationError(f"location_timeout_minutes must be between {low} and {high}")
    low, high = DESTINATION_TOLERANCE_RANGE
    if not low <= fields.get("destination_tolerance_meters", 500) <= high:
        raise ValidationError(f"destination_tolerance_meters must be between {low} and {high}")


class TripService:
    def __init__(self, trip_store: TripStore, clock: Clock = utcnow):
        self.trip_store = trip_store
        self.clock = clock

    def _load(self, trip_id: int, user_id: int) -> Trip:
        trip = self.trip_store.get(trip_id, user_id=user_id)
        if trip is None:
            raise NotFoundError(f"trip {trip_id} not found")
        return trip

    def create_trip(self, user_id: int, **fields: Any) -> Trip:
        now = self.clock()
        fields["start_time"] = to_naive_utc(fields.get("start_time"))
        fields["end_time"] = to_naive_utc(fields.get("end_time"))
        fields.setdefault("travel_mode", "other")
        fields.setdefault("location_timeout_minutes", 30)
        fields.setdefault("destination_tolerance_meters", 500)
        validate_trip_fields(fields, now, creating=True)

        trip = Trip(
            user_id=user_id,
            status=TRIP_SCHEDULED,
            is_active=True,
            emergency_contacts_notified=False,
            alert_history=[history_entry("created", "Trip created", now)],
            sync_version=1,
            created_at=now,
            updated_at=now,
            **{name: fields.get(name) for name in EDITABLE_FIELDS},
        )
        return self.trip_store.create(trip)

    def update_trip(self, trip_id: int, user_id: int, changes: dict[str, Any],
                    expected_version: int | None = None) -> Trip:
        trip = self._load(trip_id, user_id)
        if expected_version is not None and expected_version != trip.sync_version:
            raise ConcurrencyConflict("trip", trip_id, expected_version)
        if trip.status in FINISHED_TRIP_STATUSES:
            raise InvalidTransition(f"Cannot edit a trip that is {trip.status}")

        for name in ("start_time", "end_time"):
            if name in changes:
                changes[name] = to_naive_utc(changes[name])
        merged = {name: getattr(trip, name) for name in EDITABLE_FIELDS}
        merged.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
        validate_trip_fields(merged, self.clock())

        for name, value in merged.items():
            setattr(trip, name, value)
        return self.trip_store.save(trip, now=self.clock())

    def update_location(self, trip_id: int, user_id: int, lat: float, lon: float,
                        address: str | None = None) -> Trip:
        if not is_valid_coordinate(lat, lon):
            raise ValidationError("coordinates are out of range")
        trip = self._load(trip_id, user_id)
        if trip.status not in (TRIP_ACTIVE, TRIP_ALERT_TRIGGERED):
            raise InvalidTransition(f"Cannot track location for a trip that is {trip.status}")

        trip.current_lat = lat
        trip.current_lon = lon
        trip.current_address = address
        trip.last_location_update = self.clock()
        return self.trip_store.save(trip, now=trip.last_location_update)

    def _finish(self, trip_id: int, user_id: int, action: str, new_status: str) -> Trip:
        trip = self._load(trip_id, user_id)
        check_user_action(trip, action)
        now = self.clock()
        trip.alert_history = list(trip.alert_history or []) + [
            history_entry("status_change", f"Status changed from {trip.status} to {new_status} (user_{action})", now)
        ]
        trip.status = new_status
        if new_status == TRIP_COMPLETED:
            trip.completed_at = now
        saved = self.trip_store.save(trip, now=now)
        log.info(f"[Trips] Trip {trip_id} {new_status} by user {user_id}")
        return saved

    def cancel_trip(self, trip_id: int, user_id: int) -> Trip:
        return self._finish(trip_id, user_id, "cancel", TRIP_CANCELLED)

    def complete_trip(self, trip_id: int, user_id: int) -> Trip:
        return self._finish(trip_id, user_id, "complete", TRIP_COMPLETED)

    def delete_trip(self, trip_id: int, user_id: int) -> Trip:
        trip = self._load(trip_id, user_id)
        trip.is_active = False
        return self.trip_store.save(trip, now=self.clock())
