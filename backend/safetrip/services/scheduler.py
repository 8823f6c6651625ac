from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..clock import Clock, utcnow
from ..config import Settings, get_settings
from ..errors import ConcurrencyConflict, DataIntegrityError
from ..models import ALERT_DEVIATION, ALERT_INACTIVITY, TRIP_COMPLETED
from .alerts import AlertService
from .dedup import trip_subject
from .safe_zone import REASON_INACTIVITY, MonitoredUserSnapshot, evaluate_safe_zone
from .trip_state import evaluate_trip, history_entry

log = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_TRIPS = "trips"
MODE_SAFE_ZONE = "safe_zone"
MODE_HIGH_RISK = "high_risk"
MODES = (MODE_FULL, MODE_TRIPS, MODE_SAFE_ZONE, MODE_HIGH_RISK)

HIGH_RISK_JOB_ID = "high_risk_check"


@dataclass
class CycleSummary:
    mode: str
    started_at: datetime
    scanned: int = 0
    triggered: int = 0
    suppressed: int = 0
    notified: int = 0
    errors: int = 0
    conflicts: int = 0
    duration_ms: float = 0.0
    skipped: bool = False
    failed: bool = False
    error: str | None = None

    def dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


@dataclass
class _Candidates:
    trips: list = field(default_factory=list)
    users: list = field(default_factory=list)


class MonitoringScheduler:
    """Periodic scan of trips and auto-SOS users.

    `tick(mode)` runs one cycle. At most one cycle per mode runs at a time; a
    tick that finds its mode busy returns a skipped summary straight away.
    """

    def __init__(
        self,
        trip_store: Any,
        user_store: Any,
        alert_store: Any,
        alert_service: AlertService,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self.trip_store = trip_store
        self.user_store = user_store
        self.alert_store = alert_store
        self.alert_service = alert_service
        self.settings = settings or get_settings()
        self.clock = clock

        self.high_risk_enabled = self.settings.HIGH_RISK_ENABLED
        self.last_summaries: dict[str, CycleSummary] = {}
        self._locks = {mode: asyncio.Lock() for mode in MODES}
        self._candidate_slots = asyncio.Semaphore(self.settings.MAX_CONCURRENT_CANDIDATES)
        self._scheduler: AsyncIOScheduler | None = None

    # Cycle ----------------------------------------------------------------------------
    async def tick(self, mode: str = MODE_FULL) -> CycleSummary:
        if mode not in MODES:
            raise ValueError(f"unknown monitoring mode: {mode!r}")

        now = self.clock()
        summary = CycleSummary(mode=mode, started_at=now)
        lock = self._locks[mode]
        if lock.locked():
            log.info(f"[Scheduler] {mode} cycle still running, skipping this tick")
            summary.skipped = True
            return summary

        async with lock:
            started = time.monotonic()
            await self._run_cycle(mode, now, summary)
            summary.duration_ms = round((time.monotonic() - started) * 1000, 2)

        self.last_summaries[mode] = summary
        log.info(
            f"[Scheduler] {mode} cycle done in {summary.duration_ms}ms: scanned={summary.scanned} "
            f"triggered={summary.triggered} suppressed={summary.suppressed} notified={summary.notified} "
            f"errors={summary.errors} conflicts={summary.conflicts}"
        )
        return summary

    def _load_candidates(self, mode: str, now: datetime) -> _Candidates:
        candidates = _Candidates()
        if mode == MODE_HIGH_RISK:
            limit = self.settings.HIGH_RISK_MAX_CANDIDATES
            since = now - timedelta(hours=self.settings.HIGH_RISK_LOOKBACK_HOURS)
            candidates.users = self.user_store.list_high_risk_users(since, limit)
            candidates.trips = self.trip_store.find_alert_triggered_trips(limit)
            return candidates
        if mode in (MODE_FULL, MODE_SAFE_ZONE):
            candidates.users = self.user_store.list_auto_sos_enabled_users()
        if mode in (MODE_FULL, MODE_TRIPS):
            candidates.trips = self.trip_store.find_monitorable_trips()
        return candidates

    async def _run_cycle(self, mode: str, now: datetime, summary: CycleSummary) -> None:
        try:
            candidates = self._load_candidates(mode, now)
        except Exception as e:
            log.error(f"[Scheduler] Could not load {mode} candidates: {e}", exc_info=True)
            summary.failed = True
            summary.error = str(e)
            return

        summary.scanned = len(candidates.trips) + len(candidates.users)
        work = [self._isolated(summary, self._process_trip, trip, now) for trip in candidates.trips]
        work += [self._isolated(summary, self._process_user, user, now) for user in candidates.users]
        if work:
            await asyncio.gather(*work)

    async def _isolated(self, summary: CycleSummary, process: Callable[..., Awaitable[None]],
                        candidate: Any, now: datetime) -> None:
        async with self._candidate_slots:
            try:
                await process(candidate, now, summary)
            except DataIntegrityError as e:
                log.warning(f"[Scheduler] Skipping corrupt record: {e}")
                summary.errors += 1
            except Exception as e:
                log.error(f"[Scheduler] Error processing {process.__name__} candidate "
                          f"{getattr(candidate, 'id', '?')}: {e}", exc_info=True)
                summary.errors += 1

    async def _process_trip(self, trip: Any, now: datetime, summary: CycleSummary) -> None:
        evaluation = evaluate_trip(trip, now)
        if not evaluation.changed and not evaluation.conditions:
            return

        subject = trip_subject(trip.id)
        claimed = []
        for condition in evaluation.conditions:
            if self.alert_service.claim(subject, condition.kind, trip.user_id, now, trip_id=trip.id):
                claimed.append(condition)
            else:
                summary.suppressed += 1

        if not evaluation.changed and not claimed:
            return

        history = list(trip.alert_history or [])
        for transition in evaluation.transitions:
            history.append(history_entry("status_change", transition.history_message(), now))
        for condition in claimed:
            history.append(history_entry(condition.kind, condition.detail, now))
        trip.alert_history = history
        trip.status = evaluation.status
        if evaluation.status == TRIP_COMPLETED:
            trip.completed_at = now

        # The transition and its alerts are written together or not at all
        try:
            contacts = self.user_store.get_emergency_contacts(trip.user_id) if claimed else []
            alerts = [
                self.alert_service.build_alert(
                    trip.user_id, condition.kind, condition.detail,
                    location=trip.current_location, trip_id=trip.id, now=now,
                )
                for condition in claimed
            ]
            self.trip_store.save_transition(trip, alerts, [c.id for c in contacts], now=now)
        except ConcurrencyConflict as e:
            self._release_claims(subject, claimed)
            log.info(f"[Scheduler] {e}; retrying next cycle")
            summary.conflicts += 1
            return
        except Exception:
            self._release_claims(subject, claimed)
            raise

        if evaluation.changed:
            log.info(f"[Scheduler] Trip {trip.id}: {evaluation.previous_status} -> {evaluation.status}")
        if not alerts:
            return

        summary.triggered += len(alerts)
        user = self.user_store.get_user(trip.user_id)
        reached = 0
        for alert in alerts:
            log.info(f"[Scheduler] Created {alert.kind} alert {alert.id} for trip {trip.id}")
            reports = await self.alert_service.dispatch(alert, contacts, user)
            reached += sum(1 for r in reports if r.ok)
        summary.notified += reached
        if reached:
            self.trip_store.mark_contacts_notified(trip.id, now=now)

    def _release_claims(self, subject: str, claimed: list) -> None:
        for condition in claimed:
            self.alert_service.release(subject, condition.kind)

    async def _process_user(self, user: Any, now: datetime, summary: CycleSummary) -> None:
        decision = evaluate_safe_zone(MonitoredUserSnapshot.from_user(user), now)
        if not decision.trigger:
            return

        kind = ALERT_INACTIVITY if decision.reason == REASON_INACTIVITY else ALERT_DEVIATION
        outcome = await self.alert_service.raise_alert(
            user, kind, f"Automatic SOS: {decision.detail}", location=user.last_known_location, now=now,
        )
        if outcome.suppressed:
            summary.suppressed += 1
            return
        summary.triggered += 1
        summary.notified += outcome.notified

    # Housekeeping ---------------------------------------------------------------------
    async def cleanup(self) -> dict[str, int]:
        """Soft-delete finished trips and purge closed alerts past retention, then log stats."""
        now = self.clock()
        try:
            trips = self.trip_store.soft_delete_finished(now - timedelta(days=self.settings.TRIP_RETENTION_DAYS))
            alerts = self.alert_store.purge_closed(now - timedelta(days=self.settings.ALERT_RETENTION_DAYS))
        except Exception as e:
            log.error(f"[Scheduler] Retention cleanup failed: {e}", exc_info=True)
            return {"trips_archived": 0, "alerts_purged": 0}

        if trips or alerts:
            log.info(f"[Scheduler] Cleanup archived {trips} finished trips and purged {alerts} closed alerts")
        self.log_stats(now)
        return {"trips_archived": trips, "alerts_purged": alerts}

    def stats(self, now: datetime | None = None) -> dict[str, int]:
        now = now or self.clock()
        return {
            "auto_sos_users": self.user_store.count_auto_sos_users(),
            "active_alerts": self.alert_store.count_active(),
            "alerts_last_24h": self.alert_store.count_since(now - timedelta(hours=24)),
        }

    def log_stats(self, now: datetime | None = None) -> None:
        try:
            s = self.stats(now)
        except Exception as e:
            log.error(f"[Scheduler] Could not collect monitoring stats: {e}", exc_info=True)
            return
        log.info(f"[Scheduler] Stats: {s['auto_sos_users']} auto-SOS users, {s['active_alerts']} active alerts, "
                 f"{s['alerts_last_24h']} alerts in the last 24h")

    # Timers ---------------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _add_interval_job(self, func, minutes: int, job_id: str, name: str, args: list | None = None) -> None:
        self._scheduler.add_job(
            func,
            IntervalTrigger(minutes=minutes),
            args=args or [],
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _add_high_risk_job(self) -> None:
        self._add_interval_job(self.tick, self.settings.HIGH_RISK_CHECK_INTERVAL_MIN, HIGH_RISK_JOB_ID,
                               "High-risk user check", [MODE_HIGH_RISK])

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone=self.settings.TIMEZONE)
        self._add_interval_job(self.tick, self.settings.TRIP_CHECK_INTERVAL_MIN, "trip_check",
                               "Check in-flight trips", [MODE_TRIPS])
        self._add_interval_job(self.tick, self.settings.SAFE_ZONE_CHECK_INTERVAL_MIN, "safe_zone_check",
                               "Check auto-SOS users", [MODE_SAFE_ZONE])
        self._add_interval_job(self.cleanup, self.settings.CLEANUP_INTERVAL_MIN, "retention_cleanup",
                               "Retention cleanup")
        if self.high_risk_enabled:
            self._add_high_risk_job()
        self._scheduler.start()
        log.info("[Scheduler] Monitoring started")

    async def stop(self) -> None:
        """Cancel pending timers and wait for in-flight cycles to finish."""
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
        for lock in self._locks.values():
            async with lock:
                pass
        log.info("[Scheduler] Monitoring stopped")

    def enable_high_risk(self) -> None:
        self.high_risk_enabled = True
        if self.running:
            self._add_high_risk_job()
        log.info("[Scheduler] High-risk monitoring enabled")

    def disable_high_risk(self) -> None:
        self.high_risk_enabled = False
        if self.running and self._scheduler.get_job(HIGH_RISK_JOB_ID) is not None:
            self._scheduler.remove_job(HIGH_RISK_JOB_ID)
        log.info("[Scheduler] High-risk monitoring disabled")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "high_risk_enabled": self.high_risk_enabled,
            "cycles_in_progress": [mode for mode, lock in self._locks.items() if lock.locked()],
            "last_cycles": {mode: s.dict() for mode, s in self.last_summaries.items()},
        }

    def healthy(self) -> bool:
        return not any(s.failed for s in self.last_summaries.values())
