# chargequeue/services/live_store.py
"""
In-memory authoritative state for queues and live charging sessions.

One LiveStore is constructed at startup and injected into the queue service,
the promotion coordinator and the session engine. It owns:
  - non-terminal queue entries, indexed by station and by (requester, station)
  - live sessions (active | paused), indexed by id and by (requester, station)
  - one asyncio.Lock per station (ordering mutations) and per session pair

Terminal entries/sessions are dropped from here; their history lives in the DB.
"""

import asyncio
from contextlib import asynccontextmanager
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Tuple

from chargequeue.services.timers import TimerHandle

Pair = Tuple[str, int]


class QueueStatus(str, Enum):
    WAITING = "waiting"
    RESERVED = "reserved"
    CHARGING = "charging"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Entries in these statuses count against max_queue_length.
CAPACITY_STATUSES = {QueueStatus.WAITING, QueueStatus.RESERVED}


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


LIVE_SESSION_STATUSES = {SessionStatus.ACTIVE, SessionStatus.PAUSED}


@dataclass
class QueueEntry:
    id: int
    station_id: int
    requester_id: str
    position: int
    status: QueueStatus
    estimated_wait_minutes: int
    created_at: datetime
    updated_at: datetime
    reservation_expiry: Optional[datetime] = None
    expiry_timer: Optional[TimerHandle] = field(default=None, repr=False, compare=False)

    def clear_reservation(self) -> None:
        if self.expiry_timer is not None:
            self.expiry_timer.cancel()
            self.expiry_timer = None
        self.reservation_expiry = None


@dataclass
class ChargingSession:
    id: str
    requester_id: str
    station_id: int
    start_time: datetime
    rated_power: float                 # station power (kW); never tapered
    price_per_unit: float              # per kWh
    current_battery_level: float
    target_battery_level: float
    initial_battery_level: float
    charging_rate: float = 0.0         # reported rate, tapered near full
    energy_delivered: float = 0.0
    total_cost: float = 0.0
    efficiency: float = 100.0
    status: SessionStatus = SessionStatus.ACTIVE
    queue_entry_id: Optional[int] = None
    station_name: Optional[str] = None
    end_time: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    paused_seconds: float = 0.0
    progress_bucket: int = 0           # last 10-minute mark notified
    checkpoint_bucket: int = 0         # last 5-minute mark persisted
    tick: Optional[TimerHandle] = field(default=None, repr=False, compare=False)
    resume_timer: Optional[TimerHandle] = field(default=None, repr=False, compare=False)

    def elapsed_minutes(self, now: datetime) -> float:
        """Charging minutes since start, excluding time spent paused."""
        paused = self.paused_seconds
        if self.paused_at is not None:
            paused += (now - self.paused_at).total_seconds()
        seconds = (now - self.start_time).total_seconds() - paused
        return max(0.0, seconds / 60)

    def stop_timers(self) -> None:
        for handle in (self.tick, self.resume_timer):
            if handle is not None:
                handle.cancel()
        self.tick = None
        self.resume_timer = None


class LiveStore:
    def __init__(self):
        self._entries: Dict[Pair, QueueEntry] = {}
        self._by_station: Dict[int, Dict[int, QueueEntry]] = defaultdict(dict)
        self._sessions: Dict[str, ChargingSession] = {}
        self._session_by_pair: Dict[Pair, str] = {}
        self._station_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._session_locks: Dict[Pair, asyncio.Lock] = {}
        self._session_lock_users: Dict[Pair, int] = defaultdict(int)

    # ── Locks ─────────────────────────────────────────────────────────────
    def station_lock(self, station_id: int) -> asyncio.Lock:
        return self._station_locks[station_id]

    @asynccontextmanager
    async def session_lock(self, requester_id: str, station_id: int) -> AsyncIterator[None]:
        """Hold the pair's lock. The lock is dropped once nobody holds or awaits it."""
        pair = (requester_id, station_id)
        lock = self._session_locks.setdefault(pair, asyncio.Lock())
        self._session_lock_users[pair] += 1
        try:
            async with lock:
                yield
        finally:
            self._session_lock_users[pair] -= 1
            if self._session_lock_users[pair] == 0:
                del self._session_lock_users[pair]
                del self._session_locks[pair]

    # ── Queue entries ─────────────────────────────────────────────────────
    def find_entry(self, requester_id: str, station_id: int) -> Optional[QueueEntry]:
        return self._entries.get((requester_id, station_id))

    def add_entry(self, entry: QueueEntry) -> None:
        self._entries[(entry.requester_id, entry.station_id)] = entry
        self._by_station[entry.station_id][entry.id] = entry

    def retire_entry(self, entry: QueueEntry) -> None:
        """Drop a terminal entry from the live ordering."""
        self._entries.pop((entry.requester_id, entry.station_id), None)
        station = self._by_station.get(entry.station_id)
        if station is not None:
            station.pop(entry.id, None)
            if not station:
                del self._by_station[entry.station_id]

    def station_entries(self, station_id: int) -> List[QueueEntry]:
        """Non-terminal entries for a station, in position order."""
        return sorted(self._by_station.get(station_id, {}).values(), key=lambda e: e.position)

    def entries_for_requester(self, requester_id: str) -> List[QueueEntry]:
        return [e for (req, _), e in self._entries.items() if req == requester_id]

    def all_entries(self) -> List[QueueEntry]:
        return list(self._entries.values())

    def station_ids(self) -> List[int]:
        return list(self._by_station.keys())

    # ── Sessions ──────────────────────────────────────────────────────────
    def get_session(self, session_id: str) -> Optional[ChargingSession]:
        return self._sessions.get(session_id)

    def find_session(self, requester_id: str, station_id: int) -> Optional[ChargingSession]:
        session_id = self._session_by_pair.get((requester_id, station_id))
        return self._sessions.get(session_id) if session_id else None

    def add_session(self, session: ChargingSession) -> None:
        self._sessions[session.id] = session
        self._session_by_pair[(session.requester_id, session.station_id)] = session.id

    def remove_session(self, session: ChargingSession) -> None:
        self._sessions.pop(session.id, None)
        pair = (session.requester_id, session.station_id)
        if self._session_by_pair.get(pair) == session.id:
            del self._session_by_pair[pair]

    def sessions(self) -> List[ChargingSession]:
        return list(self._sessions.values())
