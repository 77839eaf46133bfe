# chargequeue/models/charging_station.py
"""
Charging stations table: the schedulable resource behind every queue.
Read by station_directory at join / session-start time; queue length
accounting is written back by the queue service.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text
from chargequeue.database import Base


class ChargingStation(Base):
    __tablename__ = "charging_stations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    address = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    is_open = Column(Boolean, default=True, nullable=False)
    max_queue_length = Column(Integer, default=5)
    current_queue_length = Column(Integer, default=0)
    average_session_minutes = Column(Integer, default=45)
    price_per_kwh = Column(Numeric(6, 2), default=10, nullable=False)
    max_power_kw = Column(Integer, default=50, nullable=False)
    owner_whatsapp_id = Column(String(20))
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<ChargingStation {self.id} {self.name!r} queue={self.current_queue_length}/{self.max_queue_length}>"
