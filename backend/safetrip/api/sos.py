"""Manual SOS, alert management and automatic SOS settings"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field

from safetrip.api import auth
from safetrip.api.errors import to_http
from safetrip.clock import to_iso8601
from safetrip.errors import SafeTripError
from safetrip.models import Alert, ContactNotification
from safetrip.services.engine import get_engine
from safetrip.services.geo import make_location
from safetrip.services.safe_zone import (
    MonitoredUserSnapshot,
    clamp_sos_settings,
    deviation_from_safe_location,
    evaluate_safe_zone,
)

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/sos",
    tags=["sos"],
    dependencies=[Depends(auth.get_current_user_id)]
)


class SOSTrigger(BaseModel):
    message: str | None = Field(default=None, max_length=500)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)
    trip_id: int | None = None


class AlertClose(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class AutoSOSSettings(BaseModel):
    auto_sos_enabled: bool | None = None
    # Out-of-range thresholds are clamped rather than rejected
    deviation_threshold_meters: int | None = None
    inactivity_threshold_minutes: int | None = None


class SafeLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)


class NotificationResponse(BaseModel):
    contact_id: int | None
    channel: str | None
    status: str
    notified_at: str | None
    failure_reason: str | None


class AlertResponse(BaseModel):
    id: int
    user_id: int
    trip_id: int | None
    kind: str
    status: str
    message: str
    location: dict | None
    created_at: str
    updated_at: str
    resolved_at: str | None
    cancel_reason: str | None
    notifications: list[NotificationResponse] | None = None


def notification_to_response(row: ContactNotification) -> NotificationResponse:
    return NotificationResponse(
        contact_id=row.contact_id,
        channel=row.channel,
        status=row.status,
        notified_at=to_iso8601(row.notified_at),
        failure_reason=row.failure_reason,
    )


def alert_to_response(alert: Alert, notifications: Optional[list[ContactNotification]] = None) -> AlertResponse:
    location = alert.location
    return AlertResponse(
        id=alert.id,
        user_id=alert.user_id,
        trip_id=alert.trip_id,
        kind=alert.kind,
        status=alert.status,
        message=alert.message,
        location=location.as_dict() if location else None,
        created_at=to_iso8601(alert.created_at),
        updated_at=to_iso8601(alert.updated_at),
        resolved_at=to_iso8601(alert.resolved_at),
        cancel_reason=alert.cancel_reason,
        notifications=[notification_to_response(n) for n in notifications] if notifications is not None else None,
    )


def _load_user(user_id: int):
    user = get_engine().user_store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post("/trigger", status_code=status.HTTP_201_CREATED)
def trigger_sos(body: SOSTrigger, background_tasks: BackgroundTasks,
                user_id: int = Depends(auth.get_current_user_id)):
    """Raise a manual SOS. Contacts are notified after the response is sent."""
    engine = get_engine()
    user = _load_user(user_id)

    if body.trip_id is not None and engine.trip_store.get(body.trip_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")

    location = make_location(body.latitude, body.longitude, body.address) or user.last_known_location
    try:
        alert, contacts = engine.alerts.trigger_manual(user, body.message, location, body.trip_id)
    except SafeTripError as e:
        raise to_http(e)

    log.info(f"[SOS] Manual SOS {alert.id} by user {user_id}, notifying {len(contacts)} contacts")
    background_tasks.add_task(engine.alerts.dispatch, alert, contacts, user)
    return {
        "ok": True,
        "status": "triggered",
        "alert_id": alert.id,
        "contacts_to_notify": len(contacts),
    }


@router.get("/alerts/active", response_model=list[AlertResponse])
def list_active_alerts(user_id: int = Depends(auth.get_current_user_id)):
    return [alert_to_response(a) for a in get_engine().alert_store.list_active_for_user(user_id)]


@router.get("/alerts/{alert_id}", response_model=AlertResponse)
def get_alert(alert_id: int, user_id: int = Depends(auth.get_current_user_id)):
    """Alert detail with the per-contact delivery ledger"""
    alert = get_engine().alert_store.get(alert_id, user_id=user_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert_to_response(alert, alert.notifications)


@router.post("/alerts/{alert_id}/cancel", response_model=AlertResponse)
def cancel_alert(alert_id: int, body: AlertClose, user_id: int = Depends(auth.get_current_user_id)):
    try:
        alert = get_engine().alerts.cancel(alert_id, user_id, body.reason)
    except SafeTripError as e:
        raise to_http(e)
    return alert_to_response(alert)


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
def resolve_alert(alert_id: int, body: AlertClose, user_id: int = Depends(auth.get_current_user_id)):
    try:
        alert = get_engine().alerts.resolve(alert_id, user_id, body.reason)
    except SafeTripError as e:
        raise to_http(e)
    return alert_to_response(alert)


# Automatic SOS --------------------------------------------------------------------------------
@router.get("/auto/status")
def auto_sos_status(user_id: int = Depends(auth.get_current_user_id)):
    """Live safe-zone evaluation for the current user"""
    engine = get_engine()
    user = _load_user(user_id)
    snapshot = MonitoredUserSnapshot.from_user(user)
    decision = evaluate_safe_zone(snapshot, engine.scheduler.clock())
    deviation = deviation_from_safe_location(snapshot)
    return {
        "auto_sos_enabled": snapshot.auto_sos_enabled,
        "deviation_threshold_meters": snapshot.deviation_threshold_meters,
        "inactivity_threshold_minutes": snapshot.inactivity_threshold_minutes,
        "safe_location": snapshot.default_location.as_dict() if snapshot.default_location else None,
        "last_known_location": snapshot.last_known_location.as_dict() if snapshot.last_known_location else None,
        "last_active_at": to_iso8601(snapshot.last_active_at),
        "deviation_meters": round(deviation) if deviation is not None else None,
        "would_trigger": decision.trigger,
        "reason": decision.reason,
        "detail": decision.detail,
    }


@router.put("/auto/settings")
def update_auto_sos_settings(body: AutoSOSSettings, user_id: int = Depends(auth.get_current_user_id)):
    changes = clamp_sos_settings(body.deviation_threshold_meters, body.inactivity_threshold_minutes)
    if body.auto_sos_enabled is not None:
        changes["auto_sos_enabled"] = body.auto_sos_enabled
    user = get_engine().user_store.update_sos_settings(user_id, **changes)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    log.info(f"[SOS] Auto-SOS settings updated for user {user_id}: {changes}")
    return {
        "ok": True,
        "auto_sos_enabled": user.auto_sos_enabled,
        "deviation_threshold_meters": user.deviation_threshold_meters,
        "inactivity_threshold_minutes": user.inactivity_threshold_minutes,
    }


@router.put("/auto/safe-location")
def update_safe_location(body: SafeLocation, user_id: int = Depends(auth.get_current_user_id)):
    user = get_engine().user_store.set_default_location(user_id, body.latitude, body.longitude, body.address)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"ok": True, "safe_location": user.default_location.as_dict()}
