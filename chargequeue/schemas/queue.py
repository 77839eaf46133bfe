# chargequeue/schemas/queue.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from chargequeue.services.live_store import QueueStatus


class QueueRequest(BaseModel):
    requester_id: str
    station_id: int


class ReserveRequest(QueueRequest):
    window_minutes: Optional[int] = None


class QueueEntryOut(BaseModel):
    id: int
    station_id: int
    requester_id: str
    position: int
    status: QueueStatus
    estimated_wait_minutes: int
    reservation_expiry: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class QueueStatsOut(BaseModel):
    station_id: int
    total_in_queue: int
    average_wait_minutes: float
    requester_position: Optional[int] = None
    requester_estimated_wait: Optional[int] = None

    class Config:
        from_attributes = True
