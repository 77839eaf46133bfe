# chargequeue/services/queue_service.py
"""
Queue store: position-ordered admission queue per charging station.

Statuses: waiting → reserved → charging → completed, with cancelled as the
other terminal state. Positions of non-terminal entries at a station are
always exactly 1..n; every departure shifts the entries behind it down by one.

All ordering mutations for a station run under that station's lock, with
the durable write done first so a failed write leaves nothing live.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from chargequeue.services.errors import FailureKind, PersistenceError
from chargequeue.services.events import (
    QueueJoined,
    QueueLeft,
    QueuePositionUpdated,
    ReservationExpired,
    ReservationGranted,
)
from chargequeue.services.live_store import (
    CAPACITY_STATUSES,
    LiveStore,
    QueueEntry,
    QueueStatus,
)
from chargequeue.services.notification_service import NotificationGateway
from chargequeue.services.persistence import SqlPersistence
from chargequeue.services.promotion import PromotionCoordinator
from chargequeue.services.rules import QueueRules
from chargequeue.services.station_directory import StationDirectory, StationSnapshot
from chargequeue.services.timers import Clock
from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)

# An entry in one of these holds the station; its departure frees the slot.
SLOT_STATUSES = {QueueStatus.RESERVED, QueueStatus.CHARGING}


@dataclass
class JoinResult:
    entry: Optional[QueueEntry] = None
    failure: Optional[FailureKind] = None

    @property
    def ok(self) -> bool:
        return self.entry is not None and self.failure is None


@dataclass
class QueueStats:
    station_id: int
    total_in_queue: int
    average_wait_minutes: float
    requester_position: Optional[int] = None
    requester_estimated_wait: Optional[int] = None


class QueueService:
    def __init__(self, store: LiveStore, persistence: SqlPersistence, directory: StationDirectory,
                 notifier: NotificationGateway, clock: Clock, rules: Optional[QueueRules] = None):
        self.store = store
        self.persistence = persistence
        self.directory = directory
        self.notifier = notifier
        self.clock = clock
        self.rules = rules or QueueRules.from_settings()
        self.promotion = PromotionCoordinator(store, self)
        self._stations: Dict[int, StationSnapshot] = {}

    # ── Public operations ─────────────────────────────────────────────────
    async def join(self, requester_id: str, station_id: int) -> JoinResult:
        try:
            station = self.directory.get_resource(station_id)
        except PersistenceError:
            return JoinResult(failure=FailureKind.PERSISTENCE_ERROR)
        if station is None or not station.accepting:
            logger.warning(f"[QUEUE] Station {station_id} unavailable for {requester_id}")
            return JoinResult(failure=FailureKind.RESOURCE_UNAVAILABLE)
        self._stations[station_id] = station

        async with self.store.station_lock(station_id):
            entries = self.store.station_entries(station_id)
            existing = self.store.find_entry(requester_id, station_id)
            held_slot = existing is not None and existing.status in SLOT_STATUSES

            in_line = sum(1 for e in entries if e.status in CAPACITY_STATUSES and e is not existing)
            if in_line >= station.max_queue_length:
                logger.warning(f"[QUEUE] Station {station_id} full ({in_line}/{station.max_queue_length})")
                return JoinResult(failure=FailureKind.QUEUE_FULL)

            try:
                if existing is None:
                    entry = self._insert_locked(requester_id, station, entries)
                else:
                    entry = self._requeue_locked(existing, station, entries)
            except PersistenceError:
                return JoinResult(failure=FailureKind.PERSISTENCE_ERROR)

            self._sync_queue_length(station_id)
            if held_slot or any(e.status == QueueStatus.CHARGING for e in entries):
                self.promotion.promote_locked(station_id)

        logger.info(f"[QUEUE] {requester_id} joined station {station_id} at position {entry.position}")
        self.notifier.notify(requester_id, QueueJoined(
            station_id=station_id, position=entry.position,
            estimated_wait_minutes=entry.estimated_wait_minutes, station_name=station.name))
        return JoinResult(entry=entry)

    async def force_join(self, requester_id: str, station_id: int) -> JoinResult:
        """Cancel any open entry for the pair, then join fresh at the tail."""
        await self.leave(requester_id, station_id, "user_cancelled")
        return await self.join(requester_id, station_id)

    async def leave(self, requester_id: str, station_id: int, reason: str = "user_cancelled") -> bool:
        async with self.store.station_lock(station_id):
            return self._leave_locked(requester_id, station_id, reason)

    async def reserve(self, requester_id: str, station_id: int, window_minutes: Optional[int] = None) -> bool:
        async with self.store.station_lock(station_id):
            entry = self.store.find_entry(requester_id, station_id)
            if entry is None or entry.position != 1 or entry.status != QueueStatus.WAITING:
                logger.warning(f"[QUEUE] {requester_id} not eligible for reservation at station {station_id}")
                return False
            return self.grant_reservation(entry, window_minutes or self.rules.reservation_window_minutes)

    async def start_charging(self, requester_id: str, station_id: int) -> bool:
        async with self.store.station_lock(station_id):
            entry = self.store.find_entry(requester_id, station_id)
            if entry is None or entry.status != QueueStatus.RESERVED:
                logger.warning(f"[QUEUE] No valid reservation for {requester_id} at station {station_id}")
                return False
            try:
                self.persistence.update_queue_entry(entry.id, status=QueueStatus.CHARGING.value,
                                                    reservation_expiry=None)
            except PersistenceError:
                return False

            entry.clear_reservation()
            entry.status = QueueStatus.CHARGING
            entry.updated_at = self.clock.now()
            logger.info(f"[QUEUE] {requester_id} started charging at station {station_id}")
            self.promotion.promote_locked(station_id)
            return True

    async def complete_charging(self, requester_id: str, station_id: int) -> bool:
        async with self.store.station_lock(station_id):
            entry = self.store.find_entry(requester_id, station_id)
            if entry is None or entry.status != QueueStatus.CHARGING:
                logger.warning(f"[QUEUE] No charging entry for {requester_id} at station {station_id}")
                return False
            return self._leave_locked(requester_id, station_id, "completed")

    async def expire_overdue_reservations(self) -> int:
        """Sweep: expire reservations whose stored expiry has passed."""
        expired = 0
        for station_id in self.store.station_ids():
            async with self.store.station_lock(station_id):
                now = self.clock.now()
                overdue = [e for e in self.store.station_entries(station_id)
                           if e.status == QueueStatus.RESERVED
                           and e.reservation_expiry is not None and e.reservation_expiry <= now]
                for entry in overdue:
                    if self._leave_locked(entry.requester_id, station_id, "expired"):
                        expired += 1
        if expired:
            logger.info(f"[SWEEP] Expired {expired} overdue reservations")
        return expired

    # ── Reads ─────────────────────────────────────────────────────────────
    def get_user_queue_status(self, requester_id: str) -> List[QueueEntry]:
        return sorted(self.store.entries_for_requester(requester_id), key=lambda e: e.created_at, reverse=True)

    def get_station_queue(self, station_id: int) -> List[QueueEntry]:
        return self.store.station_entries(station_id)

    def get_queue_stats(self, station_id: int, requester_id: Optional[str] = None) -> QueueStats:
        entries = self.store.station_entries(station_id)
        in_line = [e for e in entries if e.status in CAPACITY_STATUSES]
        avg_wait = sum(e.estimated_wait_minutes for e in in_line) / len(in_line) if in_line else 0.0
        stats = QueueStats(station_id=station_id, total_in_queue=len(in_line), average_wait_minutes=avg_wait)
        mine = self.store.find_entry(requester_id, station_id) if requester_id else None
        if mine is not None:
            stats.requester_position = mine.position
            stats.requester_estimated_wait = mine.estimated_wait_minutes
        return stats

    # ── Reservation ───────────────────────────────────────────────────────
    def grant_reservation(self, entry: QueueEntry, window_minutes: int) -> bool:
        """Reserve on behalf of `entry`. Caller must hold the station lock."""
        expiry = self.clock.now() + timedelta(minutes=window_minutes)
        try:
            self.persistence.update_queue_entry(entry.id, status=QueueStatus.RESERVED.value,
                                                reservation_expiry=expiry)
        except PersistenceError:
            return False

        entry.clear_reservation()
        entry.status = QueueStatus.RESERVED
        entry.reservation_expiry = expiry
        entry.updated_at = self.clock.now()
        self._arm_expiry(entry, window_minutes * 60)

        logger.info(f"[QUEUE] Slot reserved for {entry.requester_id} at station {entry.station_id} until {expiry}")
        self.notifier.notify(entry.requester_id, ReservationGranted(
            station_id=entry.station_id, expires_at=expiry, window_minutes=window_minutes))
        return True

    def _arm_expiry(self, entry: QueueEntry, delay_seconds: float) -> None:
        requester_id, station_id, entry_id = entry.requester_id, entry.station_id, entry.id

        async def _fire():
            await self._on_reservation_timer(requester_id, station_id, entry_id)

        entry.expiry_timer = self.clock.call_later(
            delay_seconds, _fire, name=f"reservation-{station_id}-{requester_id}")

    async def _on_reservation_timer(self, requester_id: str, station_id: int, entry_id: int):
        async with self.store.station_lock(station_id):
            entry = self.store.find_entry(requester_id, station_id)
            if entry is None or entry.id != entry_id or entry.status != QueueStatus.RESERVED:
                return
            now = self.clock.now()
            if entry.reservation_expiry is not None and now < entry.reservation_expiry:
                # Timer ran early relative to the stored expiry; wait out the rest.
                self._arm_expiry(entry, (entry.reservation_expiry - now).total_seconds())
                return
            entry.expiry_timer = None
            logger.info(f"[QUEUE] Reservation expired for {requester_id} at station {station_id}")
            self._leave_locked(requester_id, station_id, "expired")

    # ── Internals (station lock held) ─────────────────────────────────────
    def _insert_locked(self, requester_id: str, station: StationSnapshot, entries: List[QueueEntry]) -> QueueEntry:
        now = self.clock.now()
        position = max((e.position for e in entries), default=0) + 1
        wait = self._wait_minutes(position, station.average_session_minutes)
        entry_id = self.persistence.insert_queue_entry(
            station.id, requester_id, position, QueueStatus.WAITING.value, wait, now)
        entry = QueueEntry(id=entry_id, station_id=station.id, requester_id=requester_id, position=position,
                           status=QueueStatus.WAITING, estimated_wait_minutes=wait,
                           created_at=now, updated_at=now)
        self.store.add_entry(entry)
        return entry

    def _requeue_locked(self, entry: QueueEntry, station: StationSnapshot, entries: List[QueueEntry]) -> QueueEntry:
        now = self.clock.now()
        old = entry.position
        others = [e for e in entries if e is not entry]
        position = max((e.position - 1 if e.position > old else e.position for e in others), default=0) + 1
        wait = self._wait_minutes(position, station.average_session_minutes)
        self.persistence.requeue_entry(entry.id, station.id, old, position, wait, now)

        for other in others:
            if other.position > old:
                other.position -= 1
        entry.clear_reservation()
        entry.position = position
        entry.status = QueueStatus.WAITING
        entry.estimated_wait_minutes = wait
        entry.updated_at = now
        logger.info(f"[QUEUE] {entry.requester_id} re-joined station {station.id}: {old} → {position}")
        return entry

    def _leave_locked(self, requester_id: str, station_id: int, reason: str) -> bool:
        entry = self.store.find_entry(requester_id, station_id)
        if entry is None:
            logger.warning(f"[QUEUE] No active entry to cancel for {requester_id} at station {station_id}")
            return False

        status = QueueStatus.COMPLETED if reason == "completed" else QueueStatus.CANCELLED
        now = self.clock.now()
        fields = {"status": status.value, "reservation_expiry": None, "updated_at": now}
        if reason == "expired":
            fields["expired_at"] = now
        try:
            self.persistence.close_entry(entry.id, station_id, entry.position, **fields)
        except PersistenceError:
            return False

        old = entry.position
        held_slot = entry.status in SLOT_STATUSES
        entry.clear_reservation()
        entry.status = status
        entry.updated_at = now
        self.store.retire_entry(entry)
        for other in self.store.station_entries(station_id):
            if other.position > old:
                other.position -= 1

        logger.info(f"[QUEUE] {requester_id} left station {station_id} ({reason}), old position {old}")
        if reason == "expired":
            self.notifier.notify(requester_id, ReservationExpired(station_id=station_id))
        elif reason != "completed":
            self.notifier.notify(requester_id, QueueLeft(station_id=station_id, reason=reason))

        self._refresh_waiting(station_id)
        self._sync_queue_length(station_id)
        if held_slot:
            self.promotion.promote_locked(station_id)
        return True

    def _refresh_waiting(self, station_id: int) -> None:
        """Recompute and push wait estimates to every waiting entry."""
        avg = self._average_minutes(station_id)
        for entry in self.store.station_entries(station_id):
            if entry.status != QueueStatus.WAITING:
                continue
            entry.estimated_wait_minutes = self._wait_minutes(entry.position, avg)
            try:
                self.persistence.update_queue_entry(entry.id, position=entry.position,
                                                    estimated_wait_minutes=entry.estimated_wait_minutes)
            except PersistenceError:
                logger.warning(f"[QUEUE] Could not store wait estimate for entry {entry.id}")
            self.notifier.notify(entry.requester_id, QueuePositionUpdated(
                station_id=station_id, position=entry.position,
                estimated_wait_minutes=entry.estimated_wait_minutes))

    def _sync_queue_length(self, station_id: int) -> None:
        length = sum(1 for e in self.store.station_entries(station_id) if e.status in CAPACITY_STATUSES)
        try:
            self.persistence.update_station_queue_length(station_id, length)
        except PersistenceError:
            logger.warning(f"[QUEUE] Could not update queue length for station {station_id}")

    def _average_minutes(self, station_id: int) -> int:
        station = self._stations.get(station_id)
        return station.average_session_minutes if station else self.rules.default_average_session_minutes

    def _wait_minutes(self, position: int, average_session_minutes: int) -> int:
        if position == 1:
            return self.rules.base_wait_minutes
        return (position - 1) * average_session_minutes + self.rules.base_wait_minutes

    # ── Recovery ──────────────────────────────────────────────────────────
    async def recover(self) -> int:
        """Reload open entries from the DB and re-arm reservation timers."""
        rows = self.persistence.load_open_queue_entries()
        by_station: Dict[int, List[dict]] = {}
        for row in rows:
            by_station.setdefault(row["station_id"], []).append(row)

        restored = 0
        now = self.clock.now()
        for station_id, station_rows in by_station.items():
            async with self.store.station_lock(station_id):
                station_rows.sort(key=lambda r: (r["position"], r["created_at"]))
                for rank, row in enumerate(station_rows, start=1):
                    if self.store.find_entry(row["user_whatsapp"], station_id) is not None:
                        continue
                    entry = QueueEntry(
                        id=row["id"], station_id=station_id, requester_id=row["user_whatsapp"],
                        position=rank, status=QueueStatus(row["status"]),
                        estimated_wait_minutes=row["estimated_wait_minutes"] or 0,
                        created_at=row["created_at"], updated_at=row["updated_at"] or row["created_at"],
                        reservation_expiry=row["reservation_expiry"],
                    )
                    if rank != row["position"]:
                        try:
                            self.persistence.update_queue_entry(entry.id, position=rank)
                        except PersistenceError:
                            logger.warning(f"[QUEUE] Could not renumber entry {entry.id} during recovery")
                    self.store.add_entry(entry)
                    if entry.status == QueueStatus.RESERVED:
                        expiry = entry.reservation_expiry or now
                        self._arm_expiry(entry, max(0.0, (expiry - now).total_seconds()))
                    restored += 1
        logger.info(f"[QUEUE] Recovered {restored} open queue entries across {len(by_station)} stations")
        return restored
