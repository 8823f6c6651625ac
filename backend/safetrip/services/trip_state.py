"""Trip lifecycle decisions.

`evaluate_trip` is pure: given a trip snapshot and "now" it returns the status
the trip should end up in for this tick together with every alert condition
that fired on the way. The scheduler applies the result; nothing here touches
the database.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..errors import DataIntegrityError, InvalidTransition
from ..models import (
    ALERT_TRIP_DESTINATION_MISMATCH,
    ALERT_TRIP_LOCATION_TIMEOUT,
    ALERT_TRIP_OVERDUE,
    TRIP_ACTIVE,
    TRIP_ALERT_TRIGGERED,
    TRIP_CANCELLED,
    TRIP_COMPLETED,
    TRIP_MISSED,
    TRIP_SCHEDULED,
)
from .geo import distance_between

TERMINAL_STATUSES = frozenset({TRIP_COMPLETED, TRIP_CANCELLED})
# Statuses the user may still cancel or complete from
USER_ACTIONABLE_STATUSES = frozenset({TRIP_SCHEDULED, TRIP_ACTIVE, TRIP_ALERT_TRIGGERED})

# Reason codes recorded in alert_history
REASON_WINDOW_OPENED = "window_opened"
REASON_NEVER_STARTED = "never_started"
REASON_LOCATION_TIMEOUT = "location_timeout"
REASON_OVERDUE = "overdue"
REASON_DESTINATION_MISMATCH = "destination_mismatch"
REASON_ARRIVED = "arrived"


@dataclass(frozen=True)
class Transition:
    old_status: str
    new_status: str
    reason: str

    def history_message(self) -> str:
        return f"Status changed from {self.old_status} to {self.new_status} ({self.reason})"


@dataclass(frozen=True)
class TripCondition:
    kind: str  # one of the trip_* alert kinds
    reason: str
    detail: str


@dataclass
class TripEvaluation:
    trip_id: int | None
    previous_status: str
    status: str
    transitions: list[Transition] = field(default_factory=list)
    conditions: list[TripCondition] = field(default_factory=list)
    distance_to_destination: float | None = None

    @property
    def changed(self) -> bool:
        return self.status != self.previous_status


def _minutes(td: timedelta) -> int:
    return int(td.total_seconds() // 60)


def check_trip_times(start_time: datetime, end_time: datetime) -> bool:
    return end_time > start_time


def evaluate_trip(trip: Any, now: datetime) -> TripEvaluation:
    """Decide the next lifecycle state of `trip` at `now`.

    Raises DataIntegrityError when the trip's window is malformed.
    """
    if not check_trip_times(trip.start_time, trip.end_time):
        raise DataIntegrityError(
            f"trip {trip.id} has end_time {trip.end_time} not after start_time {trip.start_time}"
        )

    result = TripEvaluation(trip_id=trip.id, previous_status=trip.status, status=trip.status)
    if trip.status in TERMINAL_STATUSES or trip.status == TRIP_MISSED:
        return result

    def move(new_status: str, reason: str) -> None:
        result.transitions.append(Transition(result.status, new_status, reason))
        result.status = new_status

    def fire(kind: str, reason: str, detail: str) -> None:
        if all(c.kind != kind for c in result.conditions):
            result.conditions.append(TripCondition(kind, reason, detail))

    current = trip.current_location
    distance = distance_between(current, trip.destination) if current is not None else None
    result.distance_to_destination = distance
    tolerance = trip.destination_tolerance_meters
    within_tolerance = distance is not None and distance <= tolerance
    past_end = now > trip.end_time
    overdue_detail = (
        f"Trip '{trip.title}' was expected to end at {trip.end_time:%Y-%m-%d %H:%M} UTC "
        f"and is {_minutes(now - trip.end_time)} minutes overdue"
    )

    if result.status == TRIP_SCHEDULED:
        if past_end:
            move(TRIP_MISSED, REASON_NEVER_STARTED)
            return result
        if now < trip.start_time:
            return result
        move(TRIP_ACTIVE, REASON_WINDOW_OPENED)

    if result.status == TRIP_ACTIVE:
        if past_end and within_tolerance:
            move(TRIP_COMPLETED, REASON_ARRIVED)
            return result
        if past_end:
            move(TRIP_ALERT_TRIGGERED, REASON_OVERDUE)
            fire(ALERT_TRIP_OVERDUE, REASON_OVERDUE, overdue_detail)
        else:
            last_seen = trip.last_location_update or trip.start_time
            silent_for = now - last_seen
            if silent_for > timedelta(minutes=trip.location_timeout_minutes):
                move(TRIP_ALERT_TRIGGERED, REASON_LOCATION_TIMEOUT)
                fire(
                    ALERT_TRIP_LOCATION_TIMEOUT,
                    REASON_LOCATION_TIMEOUT,
                    f"No location update for trip '{trip.title}' in {_minutes(silent_for)} minutes "
                    f"(limit {trip.location_timeout_minutes})",
                )
    elif result.status == TRIP_ALERT_TRIGGERED:
        if within_tolerance:
            move(TRIP_COMPLETED, REASON_ARRIVED)
            return result
        if past_end:
            fire(ALERT_TRIP_OVERDUE, REASON_OVERDUE, overdue_detail)

    if result.status == TRIP_ALERT_TRIGGERED and past_end and distance is not None and distance > tolerance:
        fire(
            ALERT_TRIP_DESTINATION_MISMATCH,
            REASON_DESTINATION_MISMATCH,
            f"Trip '{trip.title}' ended but the last location is {round(distance)}m from the destination "
            f"(tolerance {tolerance}m)",
        )

    return result


def check_user_action(trip: Any, action: str) -> None:
    """Raise InvalidTransition unless `action` (cancel/complete) is allowed for the trip."""
    if trip.status not in USER_ACTIONABLE_STATUSES:
        raise InvalidTransition(f"Cannot {action} a trip that is {trip.status}")


def history_entry(kind: str, message: str, at: datetime) -> dict:
    return {"kind": kind, "message": message, "timestamp": at.isoformat()}
