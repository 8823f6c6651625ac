"""Shared fixtures: in-memory database, fake clock and a fully wired engine"""
import itertools
import os
from datetime import datetime, timedelta

# Must be set before anything imports safetrip.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SMS_BACKEND"] = "dummy"
os.environ["EMAIL_BACKEND"] = "console"
os.environ["PUSH_BACKEND"] = "dummy"
os.environ["HIGH_RISK_ENABLED"] = "false"

import pytest

from safetrip import database as db
from safetrip.messaging.base import DeliveryResult, not_applicable
from safetrip.models import EmergencyContact, Trip, User
from safetrip.services.engine import build_engine, set_engine

NOW = datetime(2026, 3, 14, 18, 0, 0)

_emails = itertools.count(1)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingChannel:
    """Channel double that records every send and answers with a fixed outcome."""

    def __init__(self, name="sms", ok=True, error=None, exc=None, requires=None):
        self.name = name
        self.ok = ok
        self.error = error
        self.exc = exc
        self.requires = requires
        self.sent = []

    async def send(self, contact, message):
        if self.requires and not getattr(contact, self.requires, None):
            return not_applicable(self.name, f"contact has no {self.requires}")
        self.sent.append((contact.id, message))
        if self.exc is not None:
            raise self.exc
        if self.ok:
            return DeliveryResult(ok=True, channel=self.name, provider_id=f"{self.name}-{len(self.sent)}")
        return DeliveryResult(ok=False, channel=self.name, error=self.error or "provider said no")


def add(obj):
    with db.SessionLocal() as session, session.begin():
        session.add(obj)
    return obj


@pytest.fixture(autouse=True)
def fresh_db():
    db.create_all()
    yield
    db.drop_all()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def engine(clock, channel):
    eng = build_engine(clock=clock, channels=[channel])
    set_engine(eng)
    yield eng
    set_engine(None)


@pytest.fixture
def make_user(clock):
    def _make_user(**overrides):
        fields = dict(
            email=f"user{next(_emails)}@example.com",
            first_name="Alex",
            last_name="Rivera",
            timezone="UTC",
            is_active=True,
            auto_sos_enabled=False,
            deviation_threshold_meters=500,
            inactivity_threshold_minutes=30,
            created_at=clock(),
            updated_at=clock(),
        )
        fields.update(overrides)
        return add(User(**fields))
    return _make_user


@pytest.fixture
def make_contact(clock):
    def _make_contact(user, **overrides):
        fields = dict(
            user_id=user.id,
            name="Jordan Lee",
            phone="+15555550100",
            email="jordan@example.com",
            is_primary=False,
            created_at=clock(),
        )
        fields.update(overrides)
        return add(EmergencyContact(**fields))
    return _make_contact


@pytest.fixture
def make_trip(clock):
    def _make_trip(user, **overrides):
        now = clock()
        fields = dict(
            user_id=user.id,
            title="Evening hike",
            start_time=now - timedelta(hours=1),
            end_time=now + timedelta(hours=1),
            dest_lat=40.7580,
            dest_lon=-73.9855,
            dest_name="Times Square",
            travel_mode="walking",
            status="active",
            last_location_update=now,
            alert_history=[],
            emergency_contacts_notified=False,
            location_timeout_minutes=30,
            destination_tolerance_meters=500,
            is_active=True,
            sync_version=1,
            created_at=now,
            updated_at=now,
        )
        fields.update(overrides)
        return add(Trip(**fields))
    return _make_trip
