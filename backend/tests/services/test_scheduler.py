"""Tests for the monitoring scheduler cycles"""
import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from conftest import RecordingChannel
from safetrip import database as db
from safetrip.errors import ConcurrencyConflict
from safetrip.models import Alert, ContactNotification, Trip
from safetrip.services.engine import build_engine
from safetrip.services.scheduler import HIGH_RISK_JOB_ID


def all_alerts():
    with db.SessionLocal() as session:
        return list(session.scalars(select(Alert).order_by(Alert.id)))


def all_notifications():
    with db.SessionLocal() as session:
        return list(session.scalars(select(ContactNotification)))


def reload_trip(trip_id):
    with db.SessionLocal() as session:
        return session.get(Trip, trip_id)


# ============================================================================
# Trip cycles
# ============================================================================

@pytest.mark.asyncio
async def test_overdue_trip_alerts_contacts(engine, clock, channel, make_user, make_contact, make_trip):
    user = make_user()
    contact = make_contact(user)
    trip = make_trip(user, start_time=clock() - timedelta(hours=2), end_time=clock() - timedelta(minutes=10),
                     last_location_update=None)

    summary = await engine.scheduler.tick("trips")

    assert summary.scanned == 1
    assert summary.triggered == 1
    assert summary.notified == 1
    assert summary.errors == 0

    stored = reload_trip(trip.id)
    assert stored.status == "alert_triggered"
    assert stored.emergency_contacts_notified is True
    # One bump for the transition, one for the notified flag
    assert stored.sync_version == 3
    assert [e["kind"] for e in stored.alert_history] == ["status_change", "trip_overdue"]

    alerts = all_alerts()
    assert [(a.kind, a.trip_id, a.status) for a in alerts] == [("trip_overdue", trip.id, "active")]
    assert channel.sent[0][0] == contact.id
    assert "Alex Rivera might be in danger!" in channel.sent[0][1].body
    assert [n.status for n in all_notifications()] == ["sent"]


@pytest.mark.asyncio
async def test_location_timeout_alert(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    trip = make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    summary = await engine.scheduler.tick("trips")

    assert summary.triggered == 1
    assert reload_trip(trip.id).status == "alert_triggered"
    assert [a.kind for a in all_alerts()] == ["trip_location_timeout"]


@pytest.mark.asyncio
async def test_dedup_across_cycles_and_after_cooldown(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    make_trip(user, start_time=clock() - timedelta(hours=2), end_time=clock() - timedelta(minutes=10),
              last_location_update=None)

    first = await engine.scheduler.tick("trips")
    clock.advance(minutes=5)
    second = await engine.scheduler.tick("trips")

    assert first.triggered == 1
    assert second.triggered == 0
    assert second.suppressed == 1
    assert len(all_alerts()) == 1

    clock.advance(minutes=61)
    third = await engine.scheduler.tick("trips")

    assert third.triggered == 1
    assert len(all_alerts()) == 2


@pytest.mark.asyncio
async def test_restart_does_not_realert(engine, clock, channel, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    make_trip(user, start_time=clock() - timedelta(hours=2), end_time=clock() - timedelta(minutes=10),
              last_location_update=None)
    await engine.scheduler.tick("trips")

    # A fresh engine has an empty in-memory guard
    restarted = build_engine(clock=clock, channels=[channel])
    clock.advance(minutes=5)
    summary = await restarted.scheduler.tick("trips")

    assert summary.suppressed == 1
    assert len(all_alerts()) == 1


@pytest.mark.asyncio
async def test_scheduled_trip_activates_without_alert(engine, clock, make_user, make_trip):
    user = make_user()
    trip = make_trip(user, status="scheduled", start_time=clock() - timedelta(minutes=1), last_location_update=None)

    summary = await engine.scheduler.tick("trips")

    assert summary.triggered == 0
    stored = reload_trip(trip.id)
    assert stored.status == "active"
    assert stored.alert_history[0]["message"] == "Status changed from scheduled to active (window_opened)"


@pytest.mark.asyncio
async def test_corrupt_trip_does_not_stop_the_scan(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    make_trip(user, title="Broken", start_time=clock(), end_time=clock() - timedelta(hours=1))
    healthy = make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    summary = await engine.scheduler.tick("trips")

    assert summary.scanned == 2
    assert summary.errors == 1
    assert summary.triggered == 1
    assert reload_trip(healthy.id).status == "alert_triggered"


@pytest.mark.asyncio
async def test_concurrent_edit_skips_trip_and_releases_dedup(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    trip = make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    with patch.object(engine.trip_store, "save_transition", side_effect=ConcurrencyConflict("trip", trip.id, 1)):
        summary = await engine.scheduler.tick("trips")

    assert summary.conflicts == 1
    assert summary.triggered == 0
    assert len(engine.dedup) == 0
    assert all_alerts() == []

    # Next cycle picks it up
    summary = await engine.scheduler.tick("trips")
    assert summary.triggered == 1


@pytest.mark.asyncio
async def test_failed_alert_write_leaves_trip_untouched(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    trip = make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    with patch("safetrip.services.stores._add_alert_with_ledger", side_effect=RuntimeError("disk full")):
        summary = await engine.scheduler.tick("trips")

    assert summary.errors == 1
    assert summary.triggered == 0
    stored = reload_trip(trip.id)
    assert stored.status == "active"
    assert stored.alert_history == []
    assert stored.sync_version == 1
    assert stored.emergency_contacts_notified is False
    assert all_alerts() == []
    assert all_notifications() == []
    assert len(engine.dedup) == 0

    clock.advance(minutes=1)
    retry = await engine.scheduler.tick("trips")

    assert retry.triggered == 1
    assert retry.suppressed == 0
    assert reload_trip(trip.id).status == "alert_triggered"
    assert [a.kind for a in all_alerts()] == ["trip_location_timeout"]


@pytest.mark.asyncio
async def test_failed_write_releases_every_claimed_condition(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    make_contact(user)
    # Overdue and about 1 km from the destination
    trip = make_trip(user, start_time=clock() - timedelta(hours=2), end_time=clock() - timedelta(minutes=10),
                     current_lat=40.7680, current_lon=-73.9855)

    with patch.object(engine.user_store, "get_emergency_contacts", side_effect=RuntimeError("db down")):
        summary = await engine.scheduler.tick("trips")

    assert summary.errors == 1
    assert reload_trip(trip.id).status == "active"
    assert all_alerts() == []
    assert len(engine.dedup) == 0

    clock.advance(minutes=1)
    retry = await engine.scheduler.tick("trips")

    assert retry.triggered == 2
    assert retry.suppressed == 0
    assert sorted(a.kind for a in all_alerts()) == ["trip_destination_mismatch", "trip_overdue"]
    assert len(all_notifications()) == 2


@pytest.mark.asyncio
async def test_contacts_notified_flag_needs_a_delivered_message(clock, make_user, make_contact, make_trip):
    failing = RecordingChannel(ok=False, error="carrier rejected")
    engine = build_engine(clock=clock, channels=[failing])
    user = make_user()
    make_contact(user)
    trip = make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    summary = await engine.scheduler.tick("trips")

    assert summary.triggered == 1
    assert summary.notified == 0
    stored = reload_trip(trip.id)
    assert stored.status == "alert_triggered"
    assert stored.emergency_contacts_notified is False
    assert stored.sync_version == 2
    assert [n.status for n in all_notifications()] == ["failed"]


@pytest.mark.asyncio
async def test_candidate_loading_failure_fails_cycle(engine):
    with patch.object(engine.trip_store, "find_monitorable_trips", side_effect=RuntimeError("db down")):
        summary = await engine.scheduler.tick("trips")

    assert summary.failed is True
    assert summary.error == "db down"
    assert engine.scheduler.healthy() is False
    assert engine.scheduler.status()["last_cycles"]["trips"]["failed"] is True


@pytest.mark.asyncio
async def test_busy_mode_skips_tick(engine):
    async with engine.scheduler._locks["trips"]:
        summary = await engine.scheduler.tick("trips")
    assert summary.skipped is True

    # Other modes are not blocked
    async with engine.scheduler._locks["trips"]:
        other = await engine.scheduler.tick("safe_zone")
    assert other.skipped is False


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected(engine):
    with pytest.raises(ValueError):
        await engine.scheduler.tick("weekly")


# ============================================================================
# Safe-zone cycles
# ============================================================================

def auto_sos_user(make_user, clock, **overrides):
    fields = dict(
        auto_sos_enabled=True,
        deviation_threshold_meters=5000,
        default_lat=40.7128, default_lon=-74.0060,
        last_known_lat=40.7128, last_known_lon=-73.9000,
        last_active_at=clock() - timedelta(minutes=5),
    )
    fields.update(overrides)
    return make_user(**fields)


@pytest.mark.asyncio
async def test_safe_zone_deviation_alert(engine, clock, channel, make_user, make_contact):
    user = auto_sos_user(make_user, clock)
    make_contact(user)

    summary = await engine.scheduler.tick("safe_zone")

    assert summary.scanned == 1
    assert summary.triggered == 1
    alert = all_alerts()[0]
    assert alert.kind == "deviation"
    assert alert.trip_id is None
    assert (alert.lat, alert.lon) == (40.7128, -73.9000)
    assert alert.message.startswith("Automatic SOS: User is")


@pytest.mark.asyncio
async def test_safe_zone_inactivity_wins(engine, clock, make_user, make_contact):
    user = auto_sos_user(make_user, clock, last_active_at=clock() - timedelta(hours=2))
    make_contact(user)

    await engine.scheduler.tick("safe_zone")

    assert [a.kind for a in all_alerts()] == ["inactivity"]


@pytest.mark.asyncio
async def test_safe_zone_alert_is_retried_after_failed_write(engine, clock, make_user, make_contact):
    user = auto_sos_user(make_user, clock)
    make_contact(user)

    with patch.object(engine.user_store, "get_emergency_contacts", side_effect=RuntimeError("db down")):
        summary = await engine.scheduler.tick("safe_zone")

    assert summary.errors == 1
    assert all_alerts() == []
    assert len(engine.dedup) == 0

    clock.advance(minutes=1)
    retry = await engine.scheduler.tick("safe_zone")

    assert retry.triggered == 1
    assert retry.suppressed == 0
    assert [a.kind for a in all_alerts()] == ["deviation"]
    assert [n.status for n in all_notifications()] == ["sent"]


@pytest.mark.asyncio
async def test_safe_zone_ignores_users_without_locations(engine, clock, make_user):
    auto_sos_user(make_user, clock, last_known_lat=None, last_known_lon=None)
    make_user(auto_sos_enabled=False)

    summary = await engine.scheduler.tick("safe_zone")

    assert summary.scanned == 1
    assert summary.triggered == 0


@pytest.mark.asyncio
async def test_full_cycle_covers_trips_and_users(engine, clock, make_user, make_contact, make_trip):
    user = auto_sos_user(make_user, clock)
    make_contact(user)
    make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    summary = await engine.scheduler.tick("full")

    assert summary.scanned == 2
    assert summary.triggered == 2
    assert sorted(a.kind for a in all_alerts()) == ["deviation", "trip_location_timeout"]


@pytest.mark.asyncio
async def test_high_risk_cycle_rechecks_recent_alert_users(engine, clock, make_user, make_contact):
    user = auto_sos_user(make_user, clock)
    make_contact(user)
    quiet = auto_sos_user(make_user, clock, last_known_lat=40.7128, last_known_lon=-74.0060)

    await engine.scheduler.tick("safe_zone")
    clock.advance(minutes=2)
    summary = await engine.scheduler.tick("high_risk")

    # Only the user with an unresolved alert is a high-risk candidate
    assert summary.scanned == 1
    assert summary.suppressed == 1
    assert len(all_alerts()) == 1
    assert quiet.id not in {a.user_id for a in all_alerts()}


# ============================================================================
# Retention and lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_cleanup_archives_trips_and_purges_alerts(engine, clock, make_user, make_contact, make_trip):
    user = make_user()
    contact = make_contact(user)
    old = clock() - timedelta(days=31)
    finished = make_trip(user, status="completed", updated_at=old)
    recent = make_trip(user, status="completed")
    stale_alert = engine.alert_store.create(Alert(
        user_id=user.id, kind="manual", message="help", status="resolved", created_at=old, updated_at=old,
    ))
    engine.alert_store.create_pending_notifications(stale_alert.id, [contact.id], now=old)
    open_alert = engine.alert_store.create(Alert(
        user_id=user.id, kind="manual", message="help", created_at=old, updated_at=old,
    ))

    result = await engine.scheduler.cleanup()

    assert result == {"trips_archived": 1, "alerts_purged": 1}
    assert reload_trip(finished.id).is_active is False
    assert reload_trip(recent.id).is_active is True
    assert [a.id for a in all_alerts()] == [open_alert.id]
    assert all_notifications() == []


def test_stats(engine, clock, make_user):
    user = make_user(auto_sos_enabled=True)
    engine.alert_store.create(Alert(user_id=user.id, kind="manual", message="help",
                                    created_at=clock(), updated_at=clock()))
    assert engine.scheduler.stats() == {"auto_sos_users": 1, "active_alerts": 1, "alerts_last_24h": 1}


@pytest.mark.asyncio
async def test_start_registers_jobs_and_stop_waits(engine):
    scheduler = engine.scheduler
    scheduler.start()
    try:
        assert scheduler.running
        job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
        assert {"trip_check", "safe_zone_check", "retention_cleanup"} <= job_ids
        assert HIGH_RISK_JOB_ID not in job_ids

        scheduler.enable_high_risk()
        assert scheduler._scheduler.get_job(HIGH_RISK_JOB_ID) is not None
        scheduler.disable_high_risk()
        assert scheduler._scheduler.get_job(HIGH_RISK_JOB_ID) is None
    finally:
        await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_stop_waits_for_running_cycle(engine, make_user, make_contact, clock, make_trip):
    user = make_user()
    make_contact(user)
    make_trip(user, last_location_update=clock() - timedelta(minutes=45))

    cycle = asyncio.ensure_future(engine.scheduler.tick("trips"))
    await asyncio.sleep(0)
    await engine.scheduler.stop()

    assert cycle.done()
    assert cycle.result().triggered == 1
