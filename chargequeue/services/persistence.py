# chargequeue/services/persistence.py
"""
Persistence adapter: durable record of queue entries and charging sessions.

Simple CRUD-style statements over SQLAlchemy. Every call opens its own DB
session, commits, and maps any SQLAlchemyError to PersistenceError after
rolling back. Callers decide whether a failure aborts (write path of a
mutating operation) or is only logged (checkpoints, reporting reads).
"""

from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from chargequeue.database import SessionLocal
from chargequeue.models.charging_session import ChargingSessionRecord
from chargequeue.models.charging_station import ChargingStation
from chargequeue.models.queue_entry import QueueEntryRecord
from chargequeue.services.errors import PersistenceError
from chargequeue.services.live_store import ChargingSession
from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)

OPEN_QUEUE_STATUSES = ("waiting", "reserved", "charging")
OPEN_SESSION_STATUSES = ("active", "paused")


def _row_dict(row) -> dict:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


def _duration_minutes(start: datetime, end: Optional[datetime]) -> Optional[int]:
    if end is None:
        return None
    return int((end - start).total_seconds() // 60)


class SqlPersistence:
    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, action: str):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[DB] {action} failed: {e}")
            raise PersistenceError(f"{action}: {e}") from e
        finally:
            db.close()

    # ── Queue entries ─────────────────────────────────────────────────────
    def insert_queue_entry(self, station_id: int, requester_id: str, position: int, status: str,
                           estimated_wait_minutes: int, now: datetime) -> int:
        with self._session("insert_queue_entry") as db:
            record = QueueEntryRecord(
                station_id=station_id, user_whatsapp=requester_id, position=position,
                status=status, estimated_wait_minutes=estimated_wait_minutes,
                joined_at=now, created_at=now, updated_at=now,
            )
            db.add(record)
            db.flush()
            return record.id

    def update_queue_entry(self, entry_id: int, **fields) -> None:
        fields.setdefault("updated_at", datetime.utcnow())
        with self._session("update_queue_entry") as db:
            db.query(QueueEntryRecord).filter(QueueEntryRecord.id == entry_id).update(
                fields, synchronize_session=False)

    def close_entry(self, entry_id: int, station_id: int, old_position: int, **fields) -> None:
        """Mark an entry terminal and close its gap in one transaction."""
        fields.setdefault("updated_at", datetime.utcnow())
        with self._session("close_entry") as db:
            db.query(QueueEntryRecord).filter(QueueEntryRecord.id == entry_id).update(
                fields, synchronize_session=False)
            self._shift(db, station_id, old_position)

    def requeue_entry(self, entry_id: int, station_id: int, old_position: int, new_position: int,
                      estimated_wait_minutes: int, now: datetime) -> None:
        """Move an open entry to the tail of its station queue, reset to waiting."""
        with self._session("requeue_entry") as db:
            self._shift(db, station_id, old_position, exclude_id=entry_id)
            db.query(QueueEntryRecord).filter(QueueEntryRecord.id == entry_id).update({
                "position": new_position,
                "status": "waiting",
                "reservation_expiry": None,
                "estimated_wait_minutes": estimated_wait_minutes,
                "joined_at": now,
                "updated_at": now,
            }, synchronize_session=False)

    @staticmethod
    def _shift(db, station_id: int, after_position: int, exclude_id: Optional[int] = None) -> int:
        q = db.query(QueueEntryRecord).filter(
            QueueEntryRecord.station_id == station_id,
            QueueEntryRecord.position > after_position,
            QueueEntryRecord.status.in_(OPEN_QUEUE_STATUSES),
        )
        if exclude_id is not None:
            q = q.filter(QueueEntryRecord.id != exclude_id)
        return q.update({QueueEntryRecord.position: QueueEntryRecord.position - 1,
                         QueueEntryRecord.updated_at: datetime.utcnow()},
                        synchronize_session=False)

    def update_station_queue_length(self, station_id: int, length: int) -> None:
        with self._session("update_station_queue_length") as db:
            db.query(ChargingStation).filter(ChargingStation.id == station_id).update(
                {"current_queue_length": length, "updated_at": datetime.utcnow()},
                synchronize_session=False)

    def load_open_queue_entries(self) -> List[dict]:
        with self._session("load_open_queue_entries") as db:
            rows = (db.query(QueueEntryRecord)
                    .filter(QueueEntryRecord.status.in_(OPEN_QUEUE_STATUSES))
                    .order_by(QueueEntryRecord.station_id, QueueEntryRecord.position)
                    .all())
            return [_row_dict(r) for r in rows]

    # ── Sessions ──────────────────────────────────────────────────────────
    def insert_session(self, session: ChargingSession) -> None:
        with self._session("insert_session") as db:
            db.add(ChargingSessionRecord(
                session_id=session.id,
                station_id=session.station_id,
                user_whatsapp=session.requester_id,
                queue_id=session.queue_entry_id,
                status=session.status.value,
                start_time=session.start_time,
                energy_delivered=session.energy_delivered,
                initial_battery_percent=session.initial_battery_level,
                current_battery_percent=session.current_battery_level,
                target_battery_percent=session.target_battery_level,
                peak_power_kw=session.rated_power,
                rate_per_kwh=session.price_per_unit,
                total_cost=session.total_cost,
                paused_seconds=0,
                created_at=session.start_time,
                updated_at=session.start_time,
            ))
        logger.info(f"[DB] Session {session.id} saved")

    def update_session(self, session: ChargingSession, finalize: bool = False,
                       stop_reason: Optional[str] = None) -> None:
        fields = {
            "status": session.status.value,
            "energy_delivered": round(session.energy_delivered, 3),
            "current_battery_percent": round(session.current_battery_level, 2),
            "target_battery_percent": session.target_battery_level,
            "total_cost": round(session.total_cost, 2),
            "paused_seconds": int(session.paused_seconds),
            "updated_at": datetime.utcnow(),
        }
        if finalize and session.end_time:
            fields["end_time"] = session.end_time
            fields["duration"] = _duration_minutes(session.start_time, session.end_time)
            fields["final_battery_percent"] = round(session.current_battery_level, 2)
            if stop_reason:
                fields["stop_reason"] = stop_reason
        with self._session("update_session") as db:
            db.query(ChargingSessionRecord).filter(
                ChargingSessionRecord.session_id == session.id).update(fields, synchronize_session=False)

    def load_open_sessions(self) -> List[dict]:
        with self._session("load_open_sessions") as db:
            rows = (db.query(ChargingSessionRecord)
                    .filter(ChargingSessionRecord.status.in_(OPEN_SESSION_STATUSES))
                    .all())
            return [_row_dict(r) for r in rows]

    def get_session(self, session_id: str) -> Optional[dict]:
        with self._session("get_session") as db:
            row = db.query(ChargingSessionRecord).filter(
                ChargingSessionRecord.session_id == session_id).first()
            return _row_dict(row) if row else None

    def session_history(self, requester_id: str, limit: int = 10) -> List[dict]:
        with self._session("session_history") as db:
            rows = (db.query(ChargingSessionRecord)
                    .filter(ChargingSessionRecord.user_whatsapp == requester_id)
                    .order_by(ChargingSessionRecord.start_time.desc())
                    .limit(limit).all())
            return [_row_dict(r) for r in rows]

    def sessions_by_station(self, station_id: int, limit: int = 50) -> List[dict]:
        with self._session("sessions_by_station") as db:
            rows = (db.query(ChargingSessionRecord)
                    .filter(ChargingSessionRecord.station_id == station_id)
                    .order_by(ChargingSessionRecord.start_time.desc())
                    .limit(limit).all())
            return [_row_dict(r) for r in rows]

    def user_stats(self, requester_id: str) -> dict:
        with self._session("user_stats") as db:
            completed = (ChargingSessionRecord.user_whatsapp == requester_id,
                         ChargingSessionRecord.status == "completed")
            total, energy, cost, avg_duration = db.query(
                func.count(ChargingSessionRecord.id),
                func.sum(ChargingSessionRecord.energy_delivered),
                func.sum(ChargingSessionRecord.total_cost),
                func.avg(ChargingSessionRecord.duration),
            ).filter(*completed).one()
            favourite = (db.query(ChargingSessionRecord.station_id,
                                  func.count(ChargingSessionRecord.id).label("n"))
                         .filter(*completed)
                         .group_by(ChargingSessionRecord.station_id)
                         .order_by(func.count(ChargingSessionRecord.id).desc())
                         .first())
            return {
                "total_sessions": int(total or 0),
                "total_energy": float(energy or 0),
                "total_cost": float(cost or 0),
                "avg_session_minutes": float(avg_duration or 0),
                "favourite_station_id": favourite[0] if favourite else None,
                "favourite_station_sessions": int(favourite[1]) if favourite else 0,
            }

    def station_stats(self, station_id: int, since: datetime) -> dict:
        with self._session("station_stats") as db:
            completed = (ChargingSessionRecord.station_id == station_id,
                         ChargingSessionRecord.status == "completed")
            total, energy, revenue, avg_duration = db.query(
                func.count(ChargingSessionRecord.id),
                func.sum(ChargingSessionRecord.energy_delivered),
                func.sum(ChargingSessionRecord.total_cost),
                func.avg(ChargingSessionRecord.duration),
            ).filter(*completed).one()
            monthly, monthly_revenue = db.query(
                func.count(ChargingSessionRecord.id),
                func.sum(ChargingSessionRecord.total_cost),
            ).filter(*completed, ChargingSessionRecord.start_time >= since).one()
            return {
                "total_sessions": int(total or 0),
                "total_energy": float(energy or 0),
                "total_revenue": float(revenue or 0),
                "avg_session_minutes": float(avg_duration or 0),
                "monthly_sessions": int(monthly or 0),
                "monthly_revenue": float(monthly_revenue or 0),
            }
