# chargequeue/schemas/session.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from chargequeue.services.live_store import SessionStatus


class SessionRequest(BaseModel):
    requester_id: str
    station_id: int


class StartSessionRequest(SessionRequest):
    queue_entry_id: Optional[int] = None


class StopSessionRequest(SessionRequest):
    reason: str = "user_stopped"


class ExtendSessionRequest(SessionRequest):
    target_battery_level: float


class SessionOut(BaseModel):
    id: str
    requester_id: str
    station_id: int
    station_name: Optional[str] = None
    status: SessionStatus
    start_time: datetime
    current_battery_level: float
    target_battery_level: float
    charging_rate: float
    energy_delivered: float
    total_cost: float
    efficiency: float

    class Config:
        from_attributes = True


class CostBreakdownOut(BaseModel):
    energy_rate: float
    energy_consumed: float
    energy_cost: float
    platform_fee: float
    gst_rate: float
    gst: float
    total_cost: float


class SessionSummaryOut(BaseModel):
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
    total_cost: float
    stop_reason: Optional[str] = None

    class Config:
        from_attributes = True
