# chargequeue/models/charging_session.py
"""
Charging sessions table.
Inserted when a session starts, checkpointed while it runs,
finalized (end_time, duration, final battery) when it completes or stops.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from chargequeue.database import Base


class ChargingSessionRecord(Base):
    __tablename__ = "charging_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(80), unique=True, nullable=False, index=True)
    station_id = Column(Integer, ForeignKey("charging_stations.id"), nullable=False, index=True)
    user_whatsapp = Column(String(20), nullable=False, index=True)
    queue_id = Column(Integer, ForeignKey("queues.id"))
    status = Column(String(20), nullable=False, default="active", index=True)  # active | paused | completed | stopped
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    duration = Column(Integer)                    # minutes (set when finalized)
    energy_delivered = Column(Numeric(10, 3), default=0)
    initial_battery_percent = Column(Numeric(5, 2))
    current_battery_percent = Column(Numeric(5, 2))
    target_battery_percent = Column(Numeric(5, 2))
    final_battery_percent = Column(Numeric(5, 2))
    peak_power_kw = Column(Numeric(6, 2))
    rate_per_kwh = Column(Numeric(6, 2))
    total_cost = Column(Numeric(10, 2), default=0)
    paused_seconds = Column(Integer, default=0)
    stop_reason = Column(String(50))
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<ChargingSessionRecord {self.session_id} status={self.status}>"
