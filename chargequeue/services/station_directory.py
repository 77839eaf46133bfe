# chargequeue/services/station_directory.py
"""Read-only station snapshots consulted at join and session-start time."""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from chargequeue.config import settings
from chargequeue.database import SessionLocal
from chargequeue.models.charging_station import ChargingStation
from chargequeue.services.errors import PersistenceError
from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StationSnapshot:
    id: int
    name: str
    is_active: bool
    is_open: bool
    max_queue_length: int
    average_session_minutes: int
    price_per_unit: float
    rated_power: float

    @property
    def accepting(self) -> bool:
        return self.is_active and self.is_open


def snapshot_from_row(row: ChargingStation) -> StationSnapshot:
    return StationSnapshot(
        id=row.id,
        name=row.name,
        is_active=bool(row.is_active),
        is_open=bool(row.is_open),
        max_queue_length=row.max_queue_length or settings.DEFAULT_MAX_QUEUE_LENGTH,
        average_session_minutes=row.average_session_minutes or settings.DEFAULT_AVERAGE_SESSION_MINUTES,
        price_per_unit=float(row.price_per_kwh or 0),
        rated_power=float(row.max_power_kw or 50),
    )


class StationDirectory:
    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def get_resource(self, station_id: int) -> Optional[StationSnapshot]:
        db = self._session_factory()
        try:
            row = db.query(ChargingStation).filter(ChargingStation.id == station_id).first()
            return snapshot_from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"[DB] Station lookup failed for {station_id}: {e}")
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

    def list_stations(self, only_active: bool = True) -> List[StationSnapshot]:
        db = self._session_factory()
        try:
            q = db.query(ChargingStation)
            if only_active:
                q = q.filter(ChargingStation.is_active == True)  # noqa: E712
            return [snapshot_from_row(row) for row in q.order_by(ChargingStation.id).all()]
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        finally:
            db.close()
