"""Tests for the trip lifecycle state machine"""
from datetime import datetime, timedelta

import pytest

from safetrip.errors import DataIntegrityError, InvalidTransition
from safetrip.models import Trip
from safetrip.services.trip_state import (
    REASON_ARRIVED,
    REASON_LOCATION_TIMEOUT,
    REASON_NEVER_STARTED,
    REASON_OVERDUE,
    REASON_WINDOW_OPENED,
    check_user_action,
    evaluate_trip,
    history_entry,
)

NOW = datetime(2026, 3, 14, 18, 0, 0)
DEST = (40.7580, -73.9855)
# ~1.1 km north of the destination
FAR = (40.7680, -73.9855)
# ~100 m north of the destination
NEAR = (40.7589, -73.9855)


def trip(**overrides):
    fields = dict(
        id=1,
        user_id=1,
        title="Evening hike",
        start_time=NOW - timedelta(hours=2),
        end_time=NOW + timedelta(hours=1),
        dest_lat=DEST[0],
        dest_lon=DEST[1],
        status="active",
        last_location_update=NOW - timedelta(minutes=5),
        location_timeout_minutes=30,
        destination_tolerance_meters=500,
    )
    fields.update(overrides)
    return Trip(**fields)


def kinds(evaluation):
    return [c.kind for c in evaluation.conditions]


# ============================================================================
# scheduled
# ============================================================================

def test_scheduled_before_start_is_unchanged():
    result = evaluate_trip(trip(status="scheduled", start_time=NOW + timedelta(minutes=10)), NOW)
    assert result.status == "scheduled"
    assert not result.changed
    assert result.conditions == []


def test_scheduled_activates_inside_window():
    t = trip(status="scheduled", start_time=NOW - timedelta(minutes=5), last_location_update=None)
    result = evaluate_trip(t, NOW)
    assert result.status == "active"
    assert [tr.reason for tr in result.transitions] == [REASON_WINDOW_OPENED]
    assert result.conditions == []


def test_scheduled_past_end_is_missed_without_alert():
    t = trip(status="scheduled", start_time=NOW - timedelta(hours=3), end_time=NOW - timedelta(hours=1))
    result = evaluate_trip(t, NOW)
    assert result.status == "missed"
    assert result.transitions[0].reason == REASON_NEVER_STARTED
    assert result.conditions == []


def test_scheduled_trip_can_activate_and_time_out_in_one_tick():
    t = trip(status="scheduled", start_time=NOW - timedelta(minutes=45), last_location_update=None)
    result = evaluate_trip(t, NOW)
    assert [tr.new_status for tr in result.transitions] == ["active", "alert_triggered"]
    assert kinds(result) == ["trip_location_timeout"]


# ============================================================================
# active
# ============================================================================

def test_overdue_without_location():
    t = trip(end_time=NOW - timedelta(minutes=10), last_location_update=None)
    result = evaluate_trip(t, NOW)
    assert result.status == "alert_triggered"
    assert result.transitions[0].reason == REASON_OVERDUE
    # Unknown location never counts as a destination mismatch
    assert kinds(result) == ["trip_overdue"]


def test_overdue_far_from_destination_also_mismatches():
    t = trip(end_time=NOW - timedelta(minutes=10), current_lat=FAR[0], current_lon=FAR[1])
    result = evaluate_trip(t, NOW)
    assert result.status == "alert_triggered"
    assert kinds(result) == ["trip_overdue", "trip_destination_mismatch"]
    assert result.distance_to_destination > 500


def test_past_end_at_destination_completes():
    t = trip(end_time=NOW - timedelta(minutes=10), current_lat=NEAR[0], current_lon=NEAR[1])
    result = evaluate_trip(t, NOW)
    assert result.status == "completed"
    assert result.transitions[0].reason == REASON_ARRIVED
    assert result.conditions == []


def test_location_timeout():
    t = trip(last_location_update=NOW - timedelta(minutes=45))
    result = evaluate_trip(t, NOW)
    assert result.status == "alert_triggered"
    assert result.transitions[0].reason == REASON_LOCATION_TIMEOUT
    assert kinds(result) == ["trip_location_timeout"]
    assert "45 minutes" in result.conditions[0].detail


def test_timeout_measured_from_start_when_never_pinged():
    t = trip(start_time=NOW - timedelta(minutes=20), last_location_update=None)
    assert evaluate_trip(t, NOW).status == "active"


def test_recent_ping_keeps_trip_active():
    result = evaluate_trip(trip(), NOW)
    assert result.status == "active"
    assert not result.changed


# ============================================================================
# alert_triggered
# ============================================================================

def test_alert_triggered_reaching_destination_completes():
    t = trip(status="alert_triggered", current_lat=NEAR[0], current_lon=NEAR[1])
    assert evaluate_trip(t, NOW).status == "completed"


def test_alert_triggered_past_end_keeps_firing_conditions():
    t = trip(status="alert_triggered", end_time=NOW - timedelta(minutes=30),
             current_lat=FAR[0], current_lon=FAR[1])
    result = evaluate_trip(t, NOW)
    assert result.status == "alert_triggered"
    assert not result.changed
    assert kinds(result) == ["trip_overdue", "trip_destination_mismatch"]


@pytest.mark.parametrize("overrides", [
    dict(status="scheduled", start_time=NOW - timedelta(minutes=45), last_location_update=None),
    dict(end_time=NOW - timedelta(minutes=10), current_lat=FAR[0], current_lon=FAR[1]),
    dict(last_location_update=NOW - timedelta(minutes=45)),
    dict(status="scheduled", start_time=NOW - timedelta(hours=3), end_time=NOW - timedelta(hours=1)),
])
def test_evaluation_reaches_a_fixed_point(overrides):
    t = trip(**overrides)
    first = evaluate_trip(t, NOW)
    t.status = first.status
    second = evaluate_trip(t, NOW)
    assert second.status == first.status
    assert not second.changed


@pytest.mark.parametrize("status", ["completed", "cancelled", "missed"])
def test_finished_trips_are_never_touched(status):
    t = trip(status=status, end_time=NOW - timedelta(hours=1), last_location_update=None)
    result = evaluate_trip(t, NOW)
    assert result.status == status
    assert result.transitions == []
    assert result.conditions == []


def test_end_not_after_start_is_a_data_error():
    t = trip(start_time=NOW, end_time=NOW)
    with pytest.raises(DataIntegrityError):
        evaluate_trip(t, NOW)


# ============================================================================
# User actions and history
# ============================================================================

@pytest.mark.parametrize("status", ["scheduled", "active", "alert_triggered"])
def test_user_actions_allowed(status):
    check_user_action(trip(status=status), "cancel")


@pytest.mark.parametrize("status", ["completed", "cancelled", "missed"])
def test_user_actions_rejected_on_finished_trips(status):
    with pytest.raises(InvalidTransition):
        check_user_action(trip(status=status), "complete")


def test_transition_history_message():
    result = evaluate_trip(trip(last_location_update=NOW - timedelta(minutes=45)), NOW)
    assert result.transitions[0].history_message() == \
        "Status changed from active to alert_triggered (location_timeout)"


def test_history_entry_shape():
    assert history_entry("trip_overdue", "late", NOW) == {
        "kind": "trip_overdue", "message": "late", "timestamp": "2026-03-14T18:00:00",
    }
