# chargequeue/schemas/station.py
from pydantic import BaseModel


class StationOut(BaseModel):
    id: int
    name: str
    is_active: bool
    is_open: bool
    max_queue_length: int
    average_session_minutes: int
    price_per_unit: float
    rated_power: float
    accepting: bool

    class Config:
        from_attributes = True
