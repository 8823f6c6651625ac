"""Trip management endpoints"""
import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from safetrip.api import auth
from safetrip.api.errors import to_http
from safetrip.clock import to_iso8601, to_naive_utc
from safetrip.errors import SafeTripError
from safetrip.models import Trip
from safetrip.services.engine import get_engine

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/trips",
    tags=["trips"],
    dependencies=[Depends(auth.get_current_user_id)]
)

TravelMode = Literal["walking", "driving", "public_transport", "cycling", "other"]


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)
    name: str | None = Field(default=None, max_length=100)


class TripCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    start_time: datetime
    end_time: datetime
    destination: LocationIn
    notes: str | None = Field(default=None, max_length=1000)
    travel_mode: TravelMode = "other"
    location_timeout_minutes: int = Field(default=30, ge=5, le=180)
    destination_tolerance_meters: int = Field(default=500, ge=50, le=5000)

    @model_validator(mode="after")
    def check_window(self):
        if to_naive_utc(self.end_time) <= to_naive_utc(self.start_time):
            raise ValueError("end_time must be after start_time")
        return self


class TripUpdate(BaseModel):
    """All fields optional; pass sync_version to detect concurrent edits."""
    title: str | None = Field(default=None, min_length=1, max_length=200)
    start_time: datetime | None = None
    end_time: datetime | None = None
    destination: LocationIn | None = None
    notes: str | None = Field(default=None, max_length=1000)
    travel_mode: TravelMode | None = None
    location_timeout_minutes: int | None = Field(default=None, ge=5, le=180)
    destination_tolerance_meters: int | None = Field(default=None, ge=50, le=5000)
    sync_version: int | None = None


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)


class HistoryEntry(BaseModel):
    kind: str
    message: str
    timestamp: str


class TripResponse(BaseModel):
    id: int
    user_id: int
    title: str
    start_time: str
    end_time: str
    destination: dict
    notes: str | None
    travel_mode: str
    status: str
    current_location: dict | None
    last_location_update: str | None
    alert_history: list[HistoryEntry]
    emergency_contacts_notified: bool
    location_timeout_minutes: int
    destination_tolerance_meters: int
    sync_version: int
    completed_at: str | None
    created_at: str
    updated_at: str


def trip_to_response(trip: Trip) -> TripResponse:
    current = trip.current_location
    return TripResponse(
        id=trip.id,
        user_id=trip.user_id,
        title=trip.title,
        start_time=to_iso8601(trip.start_time),
        end_time=to_iso8601(trip.end_time),
        destination=trip.destination.as_dict(),
        notes=trip.notes,
        travel_mode=trip.travel_mode,
        status=trip.status,
        current_location=current.as_dict() if current else None,
        last_location_update=to_iso8601(trip.last_location_update),
        alert_history=[HistoryEntry(**entry) for entry in trip.alert_history or []],
        emergency_contacts_notified=bool(trip.emergency_contacts_notified),
        location_timeout_minutes=trip.location_timeout_minutes,
        destination_tolerance_meters=trip.destination_tolerance_meters,
        sync_version=trip.sync_version,
        completed_at=to_iso8601(trip.completed_at),
        created_at=to_iso8601(trip.created_at),
        updated_at=to_iso8601(trip.updated_at),
    )


def _destination_fields(destination: LocationIn) -> dict:
    return {
        "dest_lat": destination.latitude,
        "dest_lon": destination.longitude,
        "dest_address": destination.address,
        "dest_name": destination.name,
    }


@router.post("/", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
def create_trip(body: TripCreate, user_id: int = Depends(auth.get_current_user_id)):
    """Create a new trip"""
    log.info(f"[Trips] Creating trip for user_id={user_id}: title={body.title}, "
             f"start={body.start_time}, end={body.end_time}")
    fields = body.model_dump(exclude={"destination"})
    fields.update(_destination_fields(body.destination))
    try:
        trip = get_engine().trips.create_trip(user_id, **fields)
    except SafeTripError as e:
        raise to_http(e)
    return trip_to_response(trip)


@router.get("/", response_model=list[TripResponse])
def list_trips(
    status_filter: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    user_id: int = Depends(auth.get_current_user_id)
):
    """List the user's trips, newest first"""
    limit = max(1, min(limit, 100))
    trips = get_engine().trip_store.list_for_user(user_id, status=status_filter, limit=limit, offset=max(0, offset))
    return [trip_to_response(t) for t in trips]


@router.get("/{trip_id}", response_model=TripResponse)
def get_trip(trip_id: int, user_id: int = Depends(auth.get_current_user_id)):
    trip = get_engine().trip_store.get(trip_id, user_id=user_id)
    if trip is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    return trip_to_response(trip)


@router.put("/{trip_id}", response_model=TripResponse)
def update_trip(trip_id: int, body: TripUpdate, user_id: int = Depends(auth.get_current_user_id)):
    """Edit a trip that has not finished yet"""
    changes = body.model_dump(exclude_unset=True, exclude={"destination", "sync_version"})
    if body.destination is not None:
        changes.update(_destination_fields(body.destination))
    try:
        trip = get_engine().trips.update_trip(trip_id, user_id, changes, expected_version=body.sync_version)
    except SafeTripError as e:
        raise to_http(e)
    return trip_to_response(trip)


@router.patch("/{trip_id}/location", response_model=TripResponse)
def update_trip_location(trip_id: int, body: LocationUpdate, user_id: int = Depends(auth.get_current_user_id)):
    """Record a location ping for an active trip"""
    try:
        trip = get_engine().trips.update_location(trip_id, user_id, body.latitude, body.longitude, body.address)
    except SafeTripError as e:
        raise to_http(e)
    return trip_to_response(trip)


@router.post("/{trip_id}/cancel", response_model=TripResponse)
def cancel_trip(trip_id: int, user_id: int = Depends(auth.get_current_user_id)):
    try:
        trip = get_engine().trips.cancel_trip(trip_id, user_id)
    except SafeTripError as e:
        raise to_http(e)
    return trip_to_response(trip)


@router.post("/{trip_id}/complete", response_model=TripResponse)
def complete_trip(trip_id: int, user_id: int = Depends(auth.get_current_user_id)):
    """Mark a trip as completed"""
    try:
        trip = get_engine().trips.complete_trip(trip_id, user_id)
    except SafeTripError as e:
        raise to_http(e)
    return trip_to_response(trip)


@router.delete("/{trip_id}")
def delete_trip(trip_id: int, user_id: int = Depends(auth.get_current_user_id)):
    """Soft-delete a trip"""
    try:
        get_engine().trips.delete_trip(trip_id, user_id)
    except SafeTripError as e:
        raise to_http(e)
    return {"ok": True, "message": "Trip deleted successfully"}
