# chargequeue/services/events.py
"""
Typed notification events, one dataclass per state change a requester hears about.
The notification gateway only needs `event_type`, `summary()` and `payload()`.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import ClassVar, Optional


@dataclass
class NotificationEvent:
    event_type: ClassVar[str] = "event"

    def summary(self) -> str:
        return self.event_type.replace("_", " ")

    def payload(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        data["event_type"] = self.event_type
        return data


# ── Queue events ──────────────────────────────────────────────────────────

@dataclass
class QueueJoined(NotificationEvent):
    event_type: ClassVar[str] = "queue_joined"
    station_id: int
    position: int
    estimated_wait_minutes: int
    station_name: Optional[str] = None

    def summary(self) -> str:
        return (f"You joined the queue at {self.station_name or f'station {self.station_id}'}: "
                f"position {self.position}, about {self.estimated_wait_minutes} min wait.")


@dataclass
class QueuePositionUpdated(NotificationEvent):
    event_type: ClassVar[str] = "queue_progress"
    station_id: int
    position: int
    estimated_wait_minutes: int

    def summary(self) -> str:
        return f"Queue update: you are now #{self.position}, about {self.estimated_wait_minutes} min wait."


@dataclass
class ReservationGranted(NotificationEvent):
    event_type: ClassVar[str] = "reservation_granted"
    station_id: int
    expires_at: datetime
    window_minutes: int

    def summary(self) -> str:
        return f"Your slot is reserved for {self.window_minutes} min. Start charging before it lapses."


@dataclass
class ReservationExpired(NotificationEvent):
    event_type: ClassVar[str] = "reservation_expired"
    station_id: int

    def summary(self) -> str:
        return "Your reservation expired and the slot was released. You can rejoin the queue."


@dataclass
class QueueLeft(NotificationEvent):
    event_type: ClassVar[str] = "queue_left"
    station_id: int
    reason: str

    def summary(self) -> str:
        return f"You left the queue ({self.reason.replace('_', ' ')})."


# ── Session events ────────────────────────────────────────────────────────

@dataclass
class SessionStarted(NotificationEvent):
    event_type: ClassVar[str] = "session_started"
    session_id: str
    station_id: int
    battery_level: float
    target_battery_level: float
    charging_rate: float

    def summary(self) -> str:
        return (f"Charging started at {self.charging_rate:g} kW: "
                f"{self.battery_level:.0f}% → {self.target_battery_level:.0f}%.")


@dataclass
class SessionPaused(NotificationEvent):
    event_type: ClassVar[str] = "session_paused"
    session_id: str
    auto_resume_minutes: int

    def summary(self) -> str:
        return f"Charging paused. It resumes automatically in {self.auto_resume_minutes} min."


@dataclass
class SessionResumed(NotificationEvent):
    event_type: ClassVar[str] = "session_resumed"
    session_id: str

    def summary(self) -> str:
        return "Charging resumed."


@dataclass
class SessionProgress(NotificationEvent):
    event_type: ClassVar[str] = "session_progress"
    session_id: str
    battery_level: float
    charging_rate: float
    energy_added: float
    current_cost: float
    elapsed_minutes: int

    def summary(self) -> str:
        return (f"Battery {self.battery_level:.0f}% · {self.energy_added:.2f} kWh · "
                f"₹{self.current_cost:.2f} after {self.elapsed_minutes} min.")


@dataclass
class SessionExtended(NotificationEvent):
    event_type: ClassVar[str] = "session_extended"
    session_id: str
    new_target_battery_level: float

    def summary(self) -> str:
        return f"Charging target raised to {self.new_target_battery_level:.0f}%."


@dataclass
class SessionCompleted(NotificationEvent):
    event_type: ClassVar[str] = "session_completed"
    session_id: str
    duration: str
    energy_delivered: float
    final_battery_level: float
    total_cost: float
    stopped_early: bool = False

    def summary(self) -> str:
        verb = "stopped" if self.stopped_early else "complete"
        return (f"Charging {verb}: {self.energy_delivered:.2f} kWh in {self.duration}, "
                f"battery {self.final_battery_level:.0f}%, total ₹{self.total_cost:.2f}.")
