# tests/conftest.py
"""
Shared fixtures: a manually advanced clock, an in-memory persistence
adapter, a fixed station directory and a notifier that records events.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ["DATABASE_URL"] = "sqlite://"

import heapq
import itertools
from datetime import datetime, timedelta

import pytest

from chargequeue.services.errors import PersistenceError
from chargequeue.services.live_store import LiveStore
from chargequeue.services.queue_service import QueueService
from chargequeue.services.rules import BillingRules, ChargingRules, QueueRules
from chargequeue.services.session_service import SessionService
from chargequeue.services.station_directory import StationSnapshot
from chargequeue.services.timers import TimerHandle, run_guarded

START = datetime(2025, 3, 1, 9, 0, 0)
OPEN_QUEUE = ("waiting", "reserved", "charging")


class ManualClock:
    """Clock whose time only moves when a test calls advance()."""

    def __init__(self, start=START):
        self._now = start
        self._queue = []
        self._seq = itertools.count()

    def now(self):
        return self._now

    def call_later(self, delay_seconds, callback, *, name):
        handle = TimerHandle(name)
        self._push(self._now + timedelta(seconds=max(0.0, delay_seconds)), handle, callback, None)
        return handle

    def call_every(self, interval_seconds, callback, *, name):
        handle = TimerHandle(name)
        self._push(self._now + timedelta(seconds=interval_seconds), handle, callback, interval_seconds)
        return handle

    def _push(self, due, handle, callback, interval):
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback, interval))

    async def advance(self, seconds=0.0, minutes=0.0):
        target = self._now + timedelta(seconds=seconds, minutes=minutes)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback, interval = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            await run_guarded(handle.name, callback)
            if interval is not None and not handle.cancelled:
                self._push(due + timedelta(seconds=interval), handle, callback, interval)
        self._now = target

    def pending(self):
        return sum(1 for item in self._queue if not item[2].cancelled)

    def cancel_all(self):
        for item in self._queue:
            item[2].cancel()
        self._queue.clear()


class FakePersistence:
    """Dict-backed stand-in for SqlPersistence with the same call surface."""

    def __init__(self):
        self.entries = {}
        self.sessions = {}
        self.station_lengths = {}
        self.fail = False
        self._ids = itertools.count(1)

    def _check(self):
        if self.fail:
            raise PersistenceError("store offline")

    # queue entries
    def insert_queue_entry(self, station_id, requester_id, position, status, estimated_wait_minutes, now):
        self._check()
        entry_id = next(self._ids)
        self.entries[entry_id] = {
            "id": entry_id, "station_id": station_id, "user_whatsapp": requester_id,
            "position": position, "status": status, "estimated_wait_minutes": estimated_wait_minutes,
            "reservation_expiry": None, "joined_at": now, "expired_at": None,
            "created_at": now, "updated_at": now,
        }
        return entry_id

    def update_queue_entry(self, entry_id, **fields):
        self._check()
        self.entries[entry_id].update(fields)

    def _shift(self, station_id, after_position, exclude_id=None):
        for row in self.entries.values():
            if (row["station_id"] == station_id and row["status"] in OPEN_QUEUE
                    and row["position"] > after_position and row["id"] != exclude_id):
                row["position"] -= 1

    def close_entry(self, entry_id, station_id, old_position, **fields):
        self._check()
        self.entries[entry_id].update(fields)
        self._shift(station_id, old_position)

    def requeue_entry(self, entry_id, station_id, old_position, new_position, estimated_wait_minutes, now):
        self._check()
        self._shift(station_id, old_position, exclude_id=entry_id)
        self.entries[entry_id].update(position=new_position, status="waiting", reservation_expiry=None,
                                      estimated_wait_minutes=estimated_wait_minutes, updated_at=now)

    def update_station_queue_length(self, station_id, length):
        self._check()
        self.station_lengths[station_id] = length

    def load_open_queue_entries(self):
        return [dict(r) for r in self.entries.values() if r["status"] in OPEN_QUEUE]

    def open_positions(self, station_id):
        return sorted(r["position"] for r in self.entries.values()
                      if r["station_id"] == station_id and r["status"] in OPEN_QUEUE)

    # sessions
    def insert_session(self, session):
        self._check()
        self.sessions[session.id] = {
            "session_id": session.id, "station_id": session.station_id,
            "user_whatsapp": session.requester_id, "queue_id": session.queue_entry_id,
            "status": session.status.value, "start_time": session.start_time, "end_time": None,
            "duration": None, "energy_delivered": 0.0,
            "initial_battery_percent": session.initial_battery_level,
            "current_battery_percent": session.current_battery_level,
            "target_battery_percent": session.target_battery_level,
            "final_battery_percent": None, "peak_power_kw": session.rated_power,
            "rate_per_kwh": session.price_per_unit, "total_cost": 0.0, "paused_seconds": 0,
            "stop_reason": None, "updated_at": session.start_time,
        }

    def update_session(self, session, finalize=False, stop_reason=None):
        self._check()
        row = self.sessions[session.id]
        row.update(status=session.status.value, energy_delivered=session.energy_delivered,
                   current_battery_percent=session.current_battery_level,
                   target_battery_percent=session.target_battery_level,
                   total_cost=session.total_cost, paused_seconds=session.paused_seconds)
        if finalize:
            row.update(end_time=session.end_time, final_battery_percent=session.current_battery_level,
                       stop_reason=stop_reason)

    def load_open_sessions(self):
        return [dict(r) for r in self.sessions.values() if r["status"] in ("active", "paused")]

    def get_session(self, session_id):
        self._check()
        row = self.sessions.get(session_id)
        return dict(row) if row else None

    def session_history(self, requester_id, limit=10):
        self._check()
        rows = [r for r in self.sessions.values() if r["user_whatsapp"] == requester_id]
        return sorted(rows, key=lambda r: r["start_time"], reverse=True)[:limit]

    def user_stats(self, requester_id):
        self._check()
        done = [r for r in self.sessions.values()
                if r["user_whatsapp"] == requester_id and r["status"] == "completed"]
        return {"total_sessions": len(done), "total_energy": sum(r["energy_delivered"] for r in done)}

    def station_stats(self, station_id, since):
        self._check()
        done = [r for r in self.sessions.values() if r["station_id"] == station_id and r["status"] == "completed"]
        return {"total_sessions": len(done), "total_revenue": sum(r["total_cost"] for r in done)}


class LockCheckingPersistence(FakePersistence):
    """Records every position-changing write made without the station lock held."""

    def __init__(self, store):
        super().__init__()
        self.store = store
        self.unlocked_writes = []

    def _guard(self, station_id, op):
        if not self.store.station_lock(station_id).locked():
            self.unlocked_writes.append((op, station_id))

    def insert_queue_entry(self, station_id, *args):
        self._guard(station_id, "insert")
        return super().insert_queue_entry(station_id, *args)

    def close_entry(self, entry_id, station_id, old_position, **fields):
        self._guard(station_id, "close")
        super().close_entry(entry_id, station_id, old_position, **fields)

    def requeue_entry(self, entry_id, station_id, *args):
        self._guard(station_id, "requeue")
        super().requeue_entry(entry_id, station_id, *args)


class FakeDirectory:
    def __init__(self, *stations):
        self.stations = {s.id: s for s in stations}
        self.fail = False

    def get_resource(self, station_id):
        if self.fail:
            raise PersistenceError("directory offline")
        return self.stations.get(station_id)

    def list_stations(self, only_active=True):
        return [s for s in self.stations.values() if s.is_active or not only_active]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, requester_id, event):
        self.sent.append((requester_id, event))

    def events(self, event_cls, requester_id=None):
        return [e for r, e in self.sent
                if isinstance(e, event_cls) and (requester_id is None or r == requester_id)]

    async def drain(self):
        pass

    @property
    def pending(self):
        return 0


def make_station(station_id=1, max_queue_length=5, average_session_minutes=45, price=10.0,
                 power=50.0, is_active=True, is_open=True):
    return StationSnapshot(
        id=station_id, name=f"Station {station_id}", is_active=is_active, is_open=is_open,
        max_queue_length=max_queue_length, average_session_minutes=average_session_minutes,
        price_per_unit=price, rated_power=power,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return LiveStore()


@pytest.fixture
def persistence():
    return FakePersistence()


@pytest.fixture
def directory():
    return FakeDirectory(make_station(1), make_station(2, max_queue_length=1), make_station(3, is_open=False))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def queue_service(store, persistence, directory, notifier, clock):
    return QueueService(store, persistence, directory, notifier, clock, QueueRules())


@pytest.fixture
def session_service(store, persistence, directory, notifier, clock, queue_service):
    return SessionService(store, persistence, directory, notifier, clock, queue_service,
                          ChargingRules(), BillingRules())


@pytest.fixture
def guarded_persistence(store):
    return LockCheckingPersistence(store)


@pytest.fixture
def guarded_queue(store, guarded_persistence, directory, notifier, clock):
    return QueueService(store, guarded_persistence, directory, notifier, clock, QueueRules())
