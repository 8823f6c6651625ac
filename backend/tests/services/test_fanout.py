"""Tests for notification fanout to emergency contacts"""
from datetime import datetime

import pytest

from conftest import RecordingChannel
from safetrip.errors import TransientDeliveryError, ValidationError
from safetrip.models import Alert
from safetrip.services.notifications import (
    NO_CHANNEL_REASON,
    NotificationFanout,
    build_alert_body,
    format_datetime_with_tz,
)


@pytest.fixture
def alert(engine, make_user, clock):
    user = make_user()
    return engine.alert_store.create(Alert(
        user_id=user.id, kind="trip_overdue", message="Trip 'Evening hike' is 10 minutes overdue",
        lat=40.7128, lon=-74.006, created_at=clock(), updated_at=clock(),
    ))


def fanout_with(engine, clock, *channels):
    return NotificationFanout(list(channels), engine.alert_store, clock=clock)


def ledger(engine, alert):
    return {row.contact_id: row for row in engine.alert_store.list_notifications(alert.id)}


# ============================================================================
# Message building
# ============================================================================

def test_alert_body_contents():
    body = build_alert_body("Alex Rivera", "No activity for 45 minutes", "https://maps/?q=1,2", "March 14")
    assert body.startswith("🚨 EMERGENCY ALERT")
    assert "Alex Rivera might be in danger!" in body
    assert "Reason: No activity for 45 minutes" in body
    assert "Last known location: https://maps/?q=1,2" in body
    assert "Time: March 14" in body
    assert body.endswith("Please contact them immediately or call emergency services.")


def test_alert_body_without_location():
    assert "Last known location" not in build_alert_body("Alex", "reason", None, "now")


def test_format_datetime_with_tz():
    formatted, tz = format_datetime_with_tz(datetime(2026, 3, 14, 18, 0), "America/New_York")
    assert formatted == "March 14, 2026 at 02:00 PM EDT"
    assert tz == " EDT"


def test_format_datetime_unknown_timezone_falls_back_to_utc():
    formatted, _ = format_datetime_with_tz(datetime(2026, 3, 14, 18, 0), "Mars/Olympus_Mons")
    assert formatted == "March 14, 2026 at 06:00 PM UTC"


def test_build_message_uses_alert_location(engine, clock, alert):
    message = fanout_with(engine, clock).build_message(alert, "Alex Rivera", "UTC")
    assert message.map_link == "https://www.google.com/maps?q=40.7128,-74.006"
    assert message.map_link in message.body
    assert message.reason == alert.message
    assert message.title == "Emergency alert: Alex Rivera"


# ============================================================================
# Delivery
# ============================================================================

@pytest.mark.asyncio
async def test_first_successful_channel_wins(engine, clock, alert, make_user, make_contact):
    contact = make_contact(make_user())
    sms, email = RecordingChannel("sms"), RecordingChannel("email")
    reports = await fanout_with(engine, clock, sms, email).notify(alert, [contact], "Alex Rivera")

    assert [r.status for r in reports] == ["sent"]
    assert reports[0].channel == "sms"
    assert len(sms.sent) == 1
    assert email.sent == []
    row = ledger(engine, alert)[contact.id]
    assert row.status == "sent"
    assert row.channel == "sms"
    assert row.notified_at == clock()


@pytest.mark.asyncio
async def test_falls_back_to_next_channel(engine, clock, alert, make_user, make_contact):
    contact = make_contact(make_user())
    sms = RecordingChannel("sms", ok=False, error="carrier rejected")
    email = RecordingChannel("email")
    reports = await fanout_with(engine, clock, sms, email).notify(alert, [contact], "Alex Rivera")

    assert reports[0].status == "sent"
    assert reports[0].channel == "email"
    assert [a.channel for a in reports[0].attempts] == ["sms", "email"]


@pytest.mark.asyncio
async def test_all_channels_failing_records_last_reason(engine, clock, alert, make_user, make_contact):
    contact = make_contact(make_user())
    sms = RecordingChannel("sms", ok=False, error="carrier rejected")
    email = RecordingChannel("email", exc=TransientDeliveryError("Resend 503"))
    reports = await fanout_with(engine, clock, sms, email).notify(alert, [contact], "Alex Rivera")

    assert reports[0].status == "failed"
    assert reports[0].channel == "email"
    assert reports[0].failure_reason == "Resend 503"
    row = ledger(engine, alert)[contact.id]
    assert row.status == "failed"
    assert row.failure_reason == "Resend 503"
    assert row.notified_at is None


@pytest.mark.asyncio
async def test_no_applicable_channel(engine, clock, alert, make_user, make_contact):
    contact = make_contact(make_user(), phone=None)
    sms = RecordingChannel("sms", requires="phone")
    reports = await fanout_with(engine, clock, sms).notify(alert, [contact], "Alex Rivera")

    assert reports[0].status == "failed"
    assert reports[0].failure_reason == NO_CHANNEL_REASON
    assert sms.sent == []


@pytest.mark.asyncio
async def test_one_contact_failing_does_not_affect_others(engine, clock, alert, make_user, make_contact):
    owner = make_user()
    first = make_contact(owner, name="Sam", phone="+15555550101")
    broken = make_contact(owner, name="Kim", phone="+15555550102")
    last = make_contact(owner, name="Lee", phone="+15555550103")

    class PickyChannel(RecordingChannel):
        async def send(self, contact, message):
            if contact.id == broken.id:
                raise RuntimeError("socket closed")
            return await super().send(contact, message)

    sms = PickyChannel("sms")
    reports = await fanout_with(engine, clock, sms).notify(alert, [first, broken, last], "Alex Rivera")

    assert [r.contact_id for r in reports] == [first.id, broken.id, last.id]
    assert [r.status for r in reports] == ["sent", "failed", "sent"]
    assert reports[1].failure_reason == "socket closed"
    assert sorted(contact_id for contact_id, _ in sms.sent) == [first.id, last.id]

    rows = ledger(engine, alert)
    assert {contact_id: row.status for contact_id, row in rows.items()} == {
        first.id: "sent", broken.id: "failed", last.id: "sent",
    }
    assert rows[broken.id].failure_reason == "socket closed"
    assert rows[broken.id].notified_at is None
    assert rows[first.id].notified_at == clock()
    assert "pending" not in {row.status for row in rows.values()}


@pytest.mark.asyncio
async def test_no_contacts_is_not_an_error(engine, clock, alert):
    assert await fanout_with(engine, clock, RecordingChannel()).notify(alert, [], "Alex") == []


def test_prepare_creates_pending_rows_once(engine, clock, alert, make_user, make_contact):
    owner = make_user()
    contacts = [make_contact(owner), make_contact(owner, name="Sam")]
    fanout = fanout_with(engine, clock, RecordingChannel())
    fanout.prepare(alert, contacts)
    fanout.prepare(alert, contacts)

    rows = engine.alert_store.list_notifications(alert.id)
    assert len(rows) == 2
    assert {r.status for r in rows} == {"pending"}


@pytest.mark.asyncio
async def test_unsaved_alert_is_rejected(engine, clock):
    fanout = fanout_with(engine, clock, RecordingChannel())
    with pytest.raises(ValidationError):
        await fanout.notify(Alert(kind="manual", message="help"), [], "Alex")


@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(engine, clock, alert):
    alert.kind = "earthquake"
    with pytest.raises(ValidationError):
        await fanout_with(engine, clock, RecordingChannel()).notify(alert, [], "Alex")
