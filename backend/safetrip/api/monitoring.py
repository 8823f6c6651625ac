"""Monitoring control and views over in-flight trips"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from safetrip.api import auth
from safetrip.api.trips import TripResponse, trip_to_response
from safetrip.services.engine import get_engine
from safetrip.services.scheduler import MODES, MODE_FULL

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/monitoring",
    tags=["monitoring"],
    dependencies=[Depends(auth.get_current_user_id)]
)


@router.get("/status", dependencies=[Depends(auth.require_admin)])
def monitoring_status():
    engine = get_engine()
    return {**engine.scheduler.status(), "stats": engine.scheduler.stats()}


@router.post("/check", dependencies=[Depends(auth.require_admin)])
async def run_check(mode: str = MODE_FULL):
    """Run one monitoring cycle now and return its summary"""
    if mode not in MODES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"mode must be one of {', '.join(MODES)}")
    summary = await get_engine().scheduler.tick(mode)
    return summary.dict()


@router.post("/high-risk/enable", dependencies=[Depends(auth.require_admin)])
def enable_high_risk():
    get_engine().scheduler.enable_high_risk()
    return {"ok": True, "high_risk_enabled": True}


@router.post("/high-risk/disable", dependencies=[Depends(auth.require_admin)])
def disable_high_risk():
    get_engine().scheduler.disable_high_risk()
    return {"ok": True, "high_risk_enabled": False}


@router.get("/health")
def monitoring_health():
    scheduler = get_engine().scheduler
    return {"ok": scheduler.healthy(), "running": scheduler.running, "high_risk_enabled": scheduler.high_risk_enabled}


@router.get("/trips/active", response_model=list[TripResponse], dependencies=[Depends(auth.require_admin)])
def active_trips():
    engine = get_engine()
    return [trip_to_response(t) for t in engine.trip_store.find_active_trips(engine.scheduler.clock())]


@router.get("/trips/overdue", response_model=list[TripResponse], dependencies=[Depends(auth.require_admin)])
def overdue_trips():
    engine = get_engine()
    return [trip_to_response(t) for t in engine.trip_store.find_overdue_trips(engine.scheduler.clock())]


@router.get("/trips/location-check", response_model=list[TripResponse], dependencies=[Depends(auth.require_admin)])
def trips_needing_location_check():
    engine = get_engine()
    return [trip_to_response(t) for t in engine.trip_store.find_trips_needing_location_check(engine.scheduler.clock())]
