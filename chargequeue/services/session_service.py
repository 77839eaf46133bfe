# chargequeue/services/session_service.py
"""
Session engine: lifecycle of a granted charging window.

  active ⇄ paused
  active → completed      (target reached, or explicit complete)
  active | paused → stopped   (early termination, partial billing)

Each active session owns one repeating tick (TimerHandle on the session
record). The tick re-derives progress from elapsed charging minutes, fires a
progress notification every PROGRESS_NOTIFY_MINUTES, checkpoints every
CHECKPOINT_MINUTES and auto-completes the session once the target is reached.
All mutations of a session run under its (requester, station) lock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from chargequeue.services.charging_model import (
    CostBreakdown,
    calculate_progress,
    cost_breakdown,
    format_duration,
    time_to_target,
)
from chargequeue.services.errors import PersistenceError
from chargequeue.services.events import (
    SessionCompleted,
    SessionExtended,
    SessionPaused,
    SessionProgress,
    SessionResumed,
    SessionStarted,
)
from chargequeue.services.live_store import (
    LIVE_SESSION_STATUSES,
    ChargingSession,
    LiveStore,
    SessionStatus,
)
from chargequeue.services.notification_service import NotificationGateway
from chargequeue.services.persistence import SqlPersistence
from chargequeue.services.queue_service import QueueService
from chargequeue.services.rules import BillingRules, ChargingRules
from chargequeue.services.station_directory import StationDirectory
from chargequeue.services.timers import Clock
from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class SessionSummary:
    session_id: str
    requester_id: str
    station_id: int
    status: SessionStatus
    duration_minutes: int
    duration: str
    energy_delivered: float
    initial_battery_level: float
    final_battery_level: float
    efficiency: float
    cost: CostBreakdown
    stop_reason: Optional[str] = None

    @property
    def total_cost(self) -> float:
        return self.cost.total_cost


def make_session_id(requester_id: str, station_id: int, start: datetime) -> str:
    return f"session_{requester_id}_{station_id}_{int(start.timestamp() * 1000)}"


class SessionService:
    def __init__(self, store: LiveStore, persistence: SqlPersistence, directory: StationDirectory,
                 notifier: NotificationGateway, clock: Clock, queue: QueueService,
                 rules: Optional[ChargingRules] = None, billing: Optional[BillingRules] = None):
        self.store = store
        self.persistence = persistence
        self.directory = directory
        self.notifier = notifier
        self.clock = clock
        self.queue = queue
        self.rules = rules or ChargingRules.from_settings()
        self.billing = billing or BillingRules.from_settings()

    # ── Start ─────────────────────────────────────────────────────────────
    async def start_session(self, requester_id: str, station_id: int,
                            queue_entry_id: Optional[int] = None) -> Optional[ChargingSession]:
        async with self.store.session_lock(requester_id, station_id):
            existing = self.store.find_session(requester_id, station_id)
            if existing is not None and existing.status in LIVE_SESSION_STATUSES:
                logger.info(f"[SESSION] Reusing live session {existing.id}")
                if existing.status == SessionStatus.ACTIVE:
                    self._start_ticking(existing)
                return existing

            try:
                station = self.directory.get_resource(station_id)
            except PersistenceError:
                return None
            if station is None:
                logger.warning(f"[SESSION] Station {station_id} not found for {requester_id}")
                return None

            now = self.clock.now()
            session = ChargingSession(
                id=make_session_id(requester_id, station_id, now),
                requester_id=requester_id,
                station_id=station_id,
                start_time=now,
                rated_power=station.rated_power,
                price_per_unit=station.price_per_unit,
                current_battery_level=self.rules.start_battery_level,
                target_battery_level=self.rules.default_target_battery_level,
                initial_battery_level=self.rules.start_battery_level,
                charging_rate=station.rated_power,
                queue_entry_id=queue_entry_id,
                station_name=station.name,
            )
            try:
                self.persistence.insert_session(session)
            except PersistenceError:
                return None

            self.store.add_session(session)
            self._start_ticking(session)

        logger.info(f"[SESSION] Started {session.id} at {session.rated_power} kW, "
                    f"eta {format_duration(time_to_target(session.rated_power, session.target_battery_level, self.rules))}")
        self.notifier.notify(requester_id, SessionStarted(
            session_id=session.id, station_id=station_id,
            battery_level=session.current_battery_level,
            target_battery_level=session.target_battery_level,
            charging_rate=session.charging_rate))
        return session

    # ── Pause / resume / extend ───────────────────────────────────────────
    async def pause_session(self, requester_id: str, station_id: int) -> bool:
        async with self.store.session_lock(requester_id, station_id):
            session = self.store.find_session(requester_id, station_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return False

            self._apply_progress(session, self.clock.now())
            session.status = SessionStatus.PAUSED
            session.paused_at = self.clock.now()
            if not self._persist(session):
                session.status = SessionStatus.ACTIVE
                session.paused_at = None
                return False

            if session.tick is not None:
                session.tick.cancel()
                session.tick = None
            session.resume_timer = self.clock.call_later(
                self.rules.auto_resume_minutes * 60,
                lambda: self.resume_session(requester_id, station_id),
                name=f"resume-{session.id}")

        logger.info(f"[SESSION] Paused {session.id}, auto-resume in {self.rules.auto_resume_minutes} min")
        self.notifier.notify(requester_id, SessionPaused(
            session_id=session.id, auto_resume_minutes=self.rules.auto_resume_minutes))
        return True

    async def resume_session(self, requester_id: str, station_id: int) -> bool:
        async with self.store.session_lock(requester_id, station_id):
            session = self.store.find_session(requester_id, station_id)
            if session is None or session.status != SessionStatus.PAUSED:
                return False

            now = self.clock.now()
            paused_at, paused_seconds = session.paused_at, session.paused_seconds
            if paused_at is not None:
                session.paused_seconds += (now - paused_at).total_seconds()
            session.paused_at = None
            session.status = SessionStatus.ACTIVE
            if not self._persist(session):
                session.status = SessionStatus.PAUSED
                session.paused_at, session.paused_seconds = paused_at, paused_seconds
                return False

            if session.resume_timer is not None:
                session.resume_timer.cancel()
                session.resume_timer = None
            self._start_ticking(session)

        logger.info(f"[SESSION] Resumed {session.id}")
        self.notifier.notify(requester_id, SessionResumed(session_id=session.id))
        return True

    async def extend_session(self, requester_id: str, station_id: int, new_target_battery_level: float) -> bool:
        async with self.store.session_lock(requester_id, station_id):
            session = self.store.find_session(requester_id, station_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return False
            if not session.target_battery_level < new_target_battery_level <= 100:
                logger.warning(f"[SESSION] Rejected target {new_target_battery_level}% for {session.id}")
                return False

            previous = session.target_battery_level
            session.target_battery_level = new_target_battery_level
            if not self._persist(session):
                session.target_battery_level = previous
                return False

        logger.info(f"[SESSION] Extended {session.id}: {previous:g}% → {new_target_battery_level:g}%")
        self.notifier.notify(requester_id, SessionExtended(
            session_id=session.id, new_target_battery_level=new_target_battery_level))
        return True

    # ── Completion ────────────────────────────────────────────────────────
    async def complete_session(self, requester_id: str, station_id: int) -> Optional[SessionSummary]:
        """Finalize an active session as completed. Closing the queue entry is left to the caller."""
        async with self.store.session_lock(requester_id, station_id):
            session = self.store.find_session(requester_id, station_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return None
            return self._finish_locked(session, SessionStatus.COMPLETED, "completed")

    async def stop_session(self, requester_id: str, station_id: int,
                           reason: str = "user_stopped") -> Optional[SessionSummary]:
        async with self.store.session_lock(requester_id, station_id):
            session = self.store.find_session(requester_id, station_id)
            if session is None:
                return None
            summary = self._finish_locked(session, SessionStatus.STOPPED, reason)
        await self.queue.complete_charging(requester_id, station_id)
        return summary

    async def force_complete_session(self, session_id: str) -> Optional[SessionSummary]:
        session = self.store.get_session(session_id)
        if session is None:
            logger.warning(f"[SESSION] Force-complete: {session_id} is not live")
            return None
        # Admin override: paused sessions are completed too.
        summary = None
        async with self.store.session_lock(session.requester_id, session.station_id):
            if self.store.get_session(session_id) is session:
                summary = self._finish_locked(session, SessionStatus.COMPLETED, "force_completed")
        if summary is not None:
            await self.queue.complete_charging(session.requester_id, session.station_id)
        return summary

    async def emergency_stop_station(self, station_id: int, reason: str = "emergency_stop") -> int:
        stopped = 0
        for session in [s for s in self.store.sessions() if s.station_id == station_id]:
            if await self.stop_session(session.requester_id, station_id, reason) is not None:
                stopped += 1
        logger.warning(f"[SESSION] Emergency stop at station {station_id}: {stopped} sessions stopped")
        return stopped

    async def cleanup_expired_sessions(self) -> int:
        """Complete live sessions older than the staleness threshold."""
        cutoff = self.clock.now() - timedelta(hours=self.rules.stale_after_hours)
        cleaned = 0
        for session in [s for s in self.store.sessions() if s.start_time < cutoff]:
            summary = None
            async with self.store.session_lock(session.requester_id, session.station_id):
                if self.store.get_session(session.id) is session:
                    summary = self._finish_locked(session, SessionStatus.COMPLETED, "stale")
            if summary is not None:
                await self.queue.complete_charging(session.requester_id, session.station_id)
                cleaned += 1
        if cleaned:
            logger.info(f"[SWEEP] Cleaned up {cleaned} stale sessions")
        return cleaned

    def _finish_locked(self, session: ChargingSession, status: SessionStatus,
                       reason: str) -> SessionSummary:
        session.stop_timers()
        now = self.clock.now()
        self._apply_progress(session, now)
        if session.paused_at is not None:
            session.paused_seconds += (now - session.paused_at).total_seconds()
            session.paused_at = None

        breakdown = cost_breakdown(session.energy_delivered, session.price_per_unit, self.billing)
        session.total_cost = breakdown.total_cost
        session.status = status
        session.end_time = now
        self.store.remove_session(session)

        try:
            self.persistence.update_session(session, finalize=True, stop_reason=reason)
        except PersistenceError:
            logger.error(f"[SESSION] Final record for {session.id} not stored; session closed in memory")

        minutes = int((now - session.start_time).total_seconds() // 60)
        summary = SessionSummary(
            session_id=session.id,
            requester_id=session.requester_id,
            station_id=session.station_id,
            status=status,
            duration_minutes=minutes,
            duration=format_duration(minutes),
            energy_delivered=session.energy_delivered,
            initial_battery_level=session.initial_battery_level,
            final_battery_level=session.current_battery_level,
            efficiency=session.efficiency,
            cost=breakdown,
            stop_reason=reason,
        )
        logger.info(f"[SESSION] {session.id} {status.value} ({reason}): {summary.energy_delivered:.2f} kWh, "
                    f"₹{breakdown.total_cost:.2f}, {summary.duration}")
        self.notifier.notify(session.requester_id, SessionCompleted(
            session_id=session.id, duration=summary.duration,
            energy_delivered=summary.energy_delivered,
            final_battery_level=summary.final_battery_level,
            total_cost=breakdown.total_cost,
            stopped_early=status == SessionStatus.STOPPED))
        return summary

    # ── Tick ──────────────────────────────────────────────────────────────
    def _start_ticking(self, session: ChargingSession) -> None:
        if session.tick is not None and session.tick.active:
            return
        requester_id, station_id, session_id = session.requester_id, session.station_id, session.id

        async def _fire():
            await self._tick(requester_id, station_id, session_id)

        session.tick = self.clock.call_every(self.rules.tick_seconds, _fire, name=f"tick-{session_id}")

    async def _tick(self, requester_id: str, station_id: int, session_id: str):
        completed = False
        async with self.store.session_lock(requester_id, station_id):
            session = self.store.get_session(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return

            now = self.clock.now()
            progress = self._apply_progress(session, now)
            elapsed = session.elapsed_minutes(now)

            if progress.is_complete:
                self._finish_locked(session, SessionStatus.COMPLETED, "target_reached")
                completed = True
            else:
                bucket = int(elapsed // self.rules.progress_notify_minutes)
                if bucket > session.progress_bucket:
                    session.progress_bucket = bucket
                    self.notifier.notify(requester_id, SessionProgress(
                        session_id=session.id,
                        battery_level=session.current_battery_level,
                        charging_rate=session.charging_rate,
                        energy_added=session.energy_delivered,
                        current_cost=session.total_cost,
                        elapsed_minutes=int(elapsed)))

                checkpoint = int(elapsed // self.rules.checkpoint_minutes)
                if checkpoint > session.checkpoint_bucket:
                    session.checkpoint_bucket = checkpoint
                    self._persist(session)

        if completed:
            await self.queue.complete_charging(requester_id, station_id)

    def _apply_progress(self, session: ChargingSession, now: datetime):
        """Re-derive progress and fold it into the session; the level never goes down."""
        progress = calculate_progress(session.rated_power, session.target_battery_level,
                                      session.price_per_unit, session.elapsed_minutes(now), self.rules)
        level = min(max(session.current_battery_level, progress.battery_level), session.target_battery_level)
        session.current_battery_level = level
        session.energy_delivered = max(session.energy_delivered, progress.energy_added)
        session.total_cost = session.energy_delivered * session.price_per_unit
        session.charging_rate = progress.charging_rate if session.status == SessionStatus.ACTIVE else 0.0
        session.efficiency = progress.efficiency
        return progress

    def _persist(self, session: ChargingSession) -> bool:
        try:
            self.persistence.update_session(session)
            return True
        except PersistenceError:
            logger.warning(f"[SESSION] Checkpoint for {session.id} failed; continuing in memory")
            return False

    # ── Reads ─────────────────────────────────────────────────────────────
    def get_active_session(self, requester_id: str, station_id: Optional[int] = None) -> Optional[ChargingSession]:
        if station_id is not None:
            return self.store.find_session(requester_id, station_id)
        for session in self.store.sessions():
            if session.requester_id == requester_id:
                return session
        return None

    def get_session_status(self, requester_id: str, station_id: int) -> Optional[dict]:
        session = self.store.find_session(requester_id, station_id)
        if session is None:
            return None
        now = self.clock.now()
        progress = self._apply_progress(session, now)
        elapsed = session.elapsed_minutes(now)
        return {
            "session_id": session.id,
            "station_id": session.station_id,
            "station_name": session.station_name,
            "status": session.status.value,
            "battery_level": round(session.current_battery_level, 1),
            "target_battery_level": session.target_battery_level,
            "charging_rate": session.charging_rate,
            "energy_added": round(session.energy_delivered, 3),
            "current_cost": round(session.total_cost, 2),
            "efficiency": round(session.efficiency, 1),
            "duration": format_duration(elapsed),
            "minutes_remaining": round(progress.minutes_remaining, 1),
            "status_message": "Charging paused" if session.status == SessionStatus.PAUSED
            else progress.status_message,
        }

    def get_cost_breakdown(self, requester_id: str, station_id: int) -> Optional[CostBreakdown]:
        session = self.store.find_session(requester_id, station_id)
        if session is None:
            return None
        self._apply_progress(session, self.clock.now())
        return cost_breakdown(session.energy_delivered, session.price_per_unit, self.billing)

    def get_realtime_overview(self) -> List[dict]:
        now = self.clock.now()
        overview = []
        for session in self.store.sessions():
            self._apply_progress(session, now)
            overview.append({
                "session_id": session.id,
                "requester_id": session.requester_id,
                "station_id": session.station_id,
                "status": session.status.value,
                "battery_level": round(session.current_battery_level, 1),
                "energy_added": round(session.energy_delivered, 3),
                "current_cost": round(session.total_cost, 2),
                "elapsed_minutes": int(session.elapsed_minutes(now)),
            })
        return overview

    def get_session_history(self, requester_id: str, limit: int = 10) -> List[dict]:
        try:
            return self.persistence.session_history(requester_id, limit)
        except PersistenceError:
            return []

    def get_session_record(self, session_id: str) -> Optional[dict]:
        """Stored row for a session, live or finished."""
        try:
            return self.persistence.get_session(session_id)
        except PersistenceError:
            return None

    def get_user_stats(self, requester_id: str) -> Optional[dict]:
        try:
            return self.persistence.user_stats(requester_id)
        except PersistenceError:
            return None

    def get_station_stats(self, station_id: int) -> Optional[dict]:
        now = self.clock.now()
        month_start = datetime(now.year, now.month, 1)
        try:
            stats = self.persistence.station_stats(station_id, month_start)
        except PersistenceError:
            return None
        stats["active_sessions"] = sum(1 for s in self.store.sessions() if s.station_id == station_id)
        return stats

    # ── Recovery ──────────────────────────────────────────────────────────
    async def recover(self) -> int:
        """Reload active/paused sessions from the DB and re-arm their timers."""
        now = self.clock.now()
        restored = 0
        for row in self.persistence.load_open_sessions():
            requester_id, station_id = row["user_whatsapp"], row["station_id"]
            async with self.store.session_lock(requester_id, station_id):
                if self.store.find_session(requester_id, station_id) is not None:
                    continue
                session = ChargingSession(
                    id=row["session_id"],
                    requester_id=requester_id,
                    station_id=station_id,
                    start_time=row["start_time"],
                    rated_power=float(row["peak_power_kw"] or 0),
                    price_per_unit=float(row["rate_per_kwh"] or 0),
                    current_battery_level=float(row["current_battery_percent"] or self.rules.start_battery_level),
                    target_battery_level=float(row["target_battery_percent"] or self.rules.default_target_battery_level),
                    initial_battery_level=float(row["initial_battery_percent"] or self.rules.start_battery_level),
                    energy_delivered=float(row["energy_delivered"] or 0),
                    total_cost=float(row["total_cost"] or 0),
                    status=SessionStatus(row["status"]),
                    queue_entry_id=row["queue_id"],
                    paused_seconds=float(row["paused_seconds"] or 0),
                )
                if session.status == SessionStatus.PAUSED:
                    session.paused_at = row["updated_at"] or now
                elapsed = session.elapsed_minutes(now)
                session.progress_bucket = int(elapsed // self.rules.progress_notify_minutes)
                session.checkpoint_bucket = int(elapsed // self.rules.checkpoint_minutes)
                self.store.add_session(session)

                if session.status == SessionStatus.ACTIVE:
                    self._start_ticking(session)
                else:
                    resume_at = session.paused_at + timedelta(minutes=self.rules.auto_resume_minutes)
                    session.resume_timer = self.clock.call_later(
                        max(0.0, (resume_at - now).total_seconds()),
                        lambda r=requester_id, s=station_id: self.resume_session(r, s),
                        name=f"resume-{session.id}")
                restored += 1
        logger.info(f"[SESSION] Recovered {restored} live sessions")
        return restored
