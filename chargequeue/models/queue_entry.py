# chargequeue/models/queue_entry.py
"""
Queue table: one row per (requester, station) admission request.
Terminal rows (completed | cancelled) stay for history; joining again after
one of them creates a fresh row.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from chargequeue.database import Base


class QueueEntryRecord(Base):
    __tablename__ = "queues"
    __table_args__ = (
        Index("queues_station_position_idx", "station_id", "position"),
        Index("queues_user_active_idx", "user_whatsapp", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    station_id = Column(Integer, ForeignKey("charging_stations.id"), nullable=False, index=True)
    user_whatsapp = Column(String(20), nullable=False)
    position = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="waiting", index=True)  # waiting | reserved | charging | completed | cancelled
    estimated_wait_minutes = Column(Integer)
    reservation_expiry = Column(DateTime, index=True)
    joined_at = Column(DateTime)
    expired_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<QueueEntryRecord {self.id} station={self.station_id} pos={self.position} status={self.status}>"
