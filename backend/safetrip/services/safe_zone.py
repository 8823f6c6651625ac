from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .geo import Location, distance_between

REASON_NONE = "none"
REASON_INACTIVITY = "inactivity"
REASON_LOCATION_DEVIATION = "location_deviation"

DEVIATION_THRESHOLD_RANGE = (100, 5000)  # meters
INACTIVITY_THRESHOLD_RANGE = (5, 180)  # minutes


def clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def clamp_sos_settings(deviation_threshold_meters: int | None = None,
                       inactivity_threshold_minutes: int | None = None) -> dict[str, int]:
    """Pull user-supplied thresholds into their allowed ranges. Omitted values stay omitted."""
    clamped = {}
    if deviation_threshold_meters is not None:
        clamped["deviation_threshold_meters"] = clamp(deviation_threshold_meters, DEVIATION_THRESHOLD_RANGE)
    if inactivity_threshold_minutes is not None:
        clamped["inactivity_threshold_minutes"] = clamp(inactivity_threshold_minutes, INACTIVITY_THRESHOLD_RANGE)
    return clamped


@dataclass(frozen=True)
class MonitoredUserSnapshot:
    user_id: int
    auto_sos_enabled: bool
    deviation_threshold_meters: int
    inactivity_threshold_minutes: int
    default_location: Location | None
    last_known_location: Location | None
    last_active_at: datetime | None

    @classmethod
    def from_user(cls, user: Any) -> "MonitoredUserSnapshot":
        return cls(
            user_id=user.id,
            auto_sos_enabled=bool(user.auto_sos_enabled),
            deviation_threshold_meters=user.deviation_threshold_meters,
            inactivity_threshold_minutes=user.inactivity_threshold_minutes,
            default_location=user.default_location,
            last_known_location=user.last_known_location,
            last_active_at=user.last_active_at,
        )


@dataclass(frozen=True)
class SafeZoneDecision:
    trigger: bool
    reason: str
    detail: str
    distance_meters: float | None = None


NO_TRIGGER = SafeZoneDecision(trigger=False, reason=REASON_NONE, detail="")


def deviation_from_safe_location(snapshot: MonitoredUserSnapshot) -> float | None:
    if snapshot.default_location is None or snapshot.last_known_location is None:
        return None
    return distance_between(snapshot.default_location, snapshot.last_known_location)


def evaluate_safe_zone(snapshot: MonitoredUserSnapshot, now: datetime) -> SafeZoneDecision:
    """Decide whether a monitored user needs an automatic SOS.

    Inactivity is checked before deviation: a stale location from an inactive
    user says nothing about where they are now.
    """
    if not snapshot.auto_sos_enabled:
        return NO_TRIGGER

    distance = deviation_from_safe_location(snapshot)
    if distance is None:
        return NO_TRIGGER

    if snapshot.last_active_at is not None:
        idle = now - snapshot.last_active_at
        if idle > timedelta(minutes=snapshot.inactivity_threshold_minutes):
            return SafeZoneDecision(
                trigger=True,
                reason=REASON_INACTIVITY,
                detail=(
                    f"No activity for {int(idle.total_seconds() // 60)} minutes "
                    f"(threshold {snapshot.inactivity_threshold_minutes} minutes)"
                ),
                distance_meters=distance,
            )

    if distance > snapshot.deviation_threshold_meters:
        return SafeZoneDecision(
            trigger=True,
            reason=REASON_LOCATION_DEVIATION,
            detail=(
                f"User is {round(distance)}m away from their safe location "
                f"(threshold {snapshot.deviation_threshold_meters}m)"
            ),
            distance_meters=distance,
        )

    return SafeZoneDecision(trigger=False, reason=REASON_NONE, detail="", distance_meters=distance)
