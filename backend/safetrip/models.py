from __future__ import annotations

from datetime import datetime
from typing import Optional, List

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .clock import utcnow
from .database import Base
from .services.geo import Location, make_location

# Trip lifecycle
TRIP_SCHEDULED = "scheduled"
TRIP_ACTIVE = "active"
TRIP_COMPLETED = "completed"
TRIP_MISSED = "missed"
TRIP_ALERT_TRIGGERED = "alert_triggered"
TRIP_CANCELLED = "cancelled"
TRIP_STATUSES = [TRIP_SCHEDULED, TRIP_ACTIVE, TRIP_COMPLETED, TRIP_MISSED, TRIP_ALERT_TRIGGERED, TRIP_CANCELLED]
MONITORED_TRIP_STATUSES = [TRIP_SCHEDULED, TRIP_ACTIVE, TRIP_ALERT_TRIGGERED]
FINISHED_TRIP_STATUSES = [TRIP_COMPLETED, TRIP_CANCELLED, TRIP_MISSED]

TRAVEL_MODES = ["walking", "driving", "public_transport", "cycling", "other"]

# Alert kinds
ALERT_DEVIATION = "deviation"
ALERT_INACTIVITY = "inactivity"
ALERT_TRIP_OVERDUE = "trip_overdue"
ALERT_TRIP_LOCATION_TIMEOUT = "trip_location_timeout"
ALERT_TRIP_DESTINATION_MISMATCH = "trip_destination_mismatch"
ALERT_MANUAL = "manual"
ALERT_KINDS = [
    ALERT_DEVIATION, ALERT_INACTIVITY, ALERT_TRIP_OVERDUE,
    ALERT_TRIP_LOCATION_TIMEOUT, ALERT_TRIP_DESTINATION_MISMATCH, ALERT_MANUAL,
]

ALERT_STATUS_ACTIVE = "active"
ALERT_STATUS_RESOLVED = "resolved"
ALERT_STATUS_CANCELLED = "cancelled"

# ContactNotification ledger
NOTIFY_PENDING = "pending"
NOTIFY_SENT = "sent"
NOTIFY_DELIVERED = "delivered"
NOTIFY_FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Automatic SOS (safe zone) settings
    auto_sos_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    deviation_threshold_meters: Mapped[int] = mapped_column(Integer, default=500)
    inactivity_threshold_minutes: Mapped[int] = mapped_column(Integer, default=30)
    default_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    default_lon: Mapped[Optional[float]] = mapped_column(Float, default=None)
    default_address: Mapped[Optional[str]] = mapped_column(String(500), default=None)

    # Written by location ingestion, read by the monitor
    last_known_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    last_known_lon: Mapped[Optional[float]] = mapped_column(Float, default=None)
    last_known_address: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    last_active_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)

    contacts: Mapped[List["EmergencyContact"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", foreign_keys="EmergencyContact.user_id"
    )
    devices: Mapped[List["Device"]] = relationship(back_populates="user", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "A SafeTrip user"

    @property
    def default_location(self) -> Location | None:
        return make_location(self.default_lat, self.default_lon, self.default_address)

    @property
    def last_known_location(self) -> Location | None:
        return make_location(self.last_known_lat, self.last_known_lon, self.last_known_address)


class EmergencyContact(Base):
    __tablename__ = "emergency_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    email: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    relationship_label: Mapped[Optional[str]] = mapped_column("relationship", String(50), default=None)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    # App user behind this contact; their registered devices receive push alerts
    linked_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    user: Mapped[User] = relationship(back_populates="contacts", foreign_keys=[user_id])


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    platform: Mapped[str] = mapped_column(String(16), default="ios")
    token: Mapped[str] = mapped_column(String(256), unique=True)
    env: Mapped[str] = mapped_column(String(16), default="sandbox")  # 'sandbox' | 'prod'
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    user: Mapped[User] = relationship(back_populates="devices")


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)
    dest_lat: Mapped[float] = mapped_column(Float)
    dest_lon: Mapped[float] = mapped_column(Float)
    dest_address: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    dest_name: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    travel_mode: Mapped[str] = mapped_column(String(32), default="other")
    status: Mapped[str] = mapped_column(String(20), default=TRIP_SCHEDULED, index=True)

    # Location tracking, written by the user's pings while the trip is active
    current_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    current_lon: Mapped[Optional[float]] = mapped_column(Float, default=None)
    current_address: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    last_location_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), default=None)

    # Append-only list of {"kind", "message", "timestamp"}
    alert_history: Mapped[list] = mapped_column(JSON, default=list)
    emergency_contacts_notified: Mapped[bool] = mapped_column(Boolean, default=False)

    location_timeout_minutes: Mapped[int] = mapped_column(Integer, default=30)
    destination_tolerance_meters: Mapped[int] = mapped_column(Integer, default=500)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    sync_version: Mapped[int] = mapped_column(Integer, default=1)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    @property
    def destination(self) -> Location:
        return Location(self.dest_lat, self.dest_lon, self.dest_address, self.dest_name)

    @property
    def current_location(self) -> Location | None:
        return make_location(self.current_lat, self.current_lon, self.current_address)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    trip_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trips.id", ondelete="SET NULL"), default=None)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(16), default=ALERT_STATUS_ACTIVE, index=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    lon: Mapped[Optional[float]] = mapped_column(Float, default=None)
    address: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    message: Mapped[str] = mapped_column(String(500))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), default=None)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    notifications: Mapped[List["ContactNotification"]] = relationship(
        back_populates="alert", cascade="all, delete-orphan", passive_deletes=True,
        order_by="ContactNotification.id",
    )

    @property
    def location(self) -> Location | None:
        return make_location(self.lat, self.lon, self.address)

    @property
    def resolved(self) -> bool:
        return self.status != ALERT_STATUS_ACTIVE


class ContactNotification(Base):
    __tablename__ = "contact_notifications"
    __table_args__ = (UniqueConstraint("alert_id", "contact_id", name="uq_contact_notifications_alert_contact"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(ForeignKey("alerts.id", ondelete="CASCADE"), index=True)
    contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("emergency_contacts.id", ondelete="SET NULL"), index=True
    )
    channel: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    status: Mapped[str] = mapped_column(String(16), default=NOTIFY_PENDING)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), default=None)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    alert: Mapped[Alert] = relationship(back_populates="notifications")
