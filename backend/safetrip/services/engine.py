from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Sequence

from ..clock import Clock, utcnow
from ..config import Settings, get_settings
from ..messaging.base import AlertChannel
from ..messaging.channels import build_channels
from .alerts import AlertService
from .dedup import DedupGuard
from .notifications import NotificationFanout
from .scheduler import MonitoringScheduler
from .stores import AlertStore, DeviceStore, SessionFactory, TripStore, UserStore
from .trips import TripService

log = logging.getLogger(__name__)


@dataclass
class Engine:
    trip_store: TripStore
    user_store: UserStore
    alert_store: AlertStore
    device_store: DeviceStore
    dedup: DedupGuard
    fanout: NotificationFanout
    alerts: AlertService
    scheduler: MonitoringScheduler
    trips: TripService


def build_engine(
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    clock: Clock = utcnow,
    channels: Sequence[AlertChannel] | None = None,
) -> Engine:
    settings = settings or get_settings()
    trip_store = TripStore(session_factory)
    user_store = UserStore(session_factory)
    alert_store = AlertStore(session_factory)
    device_store = DeviceStore(session_factory)
    if channels is None:
        channels = build_channels(settings, device_store)

    dedup = DedupGuard(timedelta(minutes=settings.DEDUP_COOLDOWN_MIN))
    fanout = NotificationFanout(
        channels, alert_store, max_concurrent_sends=settings.MAX_CONCURRENT_SENDS,
        clock=clock, map_link_base=settings.MAP_LINK_BASE,
    )
    alerts = AlertService(alert_store, user_store, fanout, dedup, clock=clock)
    scheduler = MonitoringScheduler(trip_store, user_store, alert_store, alerts, settings=settings, clock=clock)
    trips = TripService(trip_store, clock=clock)
    return Engine(trip_store, user_store, alert_store, device_store, dedup, fanout, alerts, scheduler, trips)


# Process-wide engine used by the API
_engine: Engine | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
        log.info("[Engine] Monitoring engine initialized")
    return _engine


def set_engine(engine: Engine | None) -> None:
    global _engine
    _engine = engine
