# chargequeue/services/rules.py
"""
Business constants as injectable value objects, built from Settings.
The values mirror the placeholder rules of the charging product
(0.6 kWh per battery %, 5-minute base wait, ₹5 platform-fee floor, 18% GST).
"""

from dataclasses import dataclass

from chargequeue.config import settings as default_settings


@dataclass(frozen=True)
class QueueRules:
    base_wait_minutes: int = 5
    reservation_window_minutes: int = 15
    default_max_queue_length: int = 5
    default_average_session_minutes: int = 45

    @classmethod
    def from_settings(cls, s=default_settings) -> "QueueRules":
        return cls(
            base_wait_minutes=s.BASE_WAIT_MINUTES,
            reservation_window_minutes=s.RESERVATION_WINDOW_MINUTES,
            default_max_queue_length=s.DEFAULT_MAX_QUEUE_LENGTH,
            default_average_session_minutes=s.DEFAULT_AVERAGE_SESSION_MINUTES,
        )


@dataclass(frozen=True)
class ChargingRules:
    start_battery_level: float = 20.0
    default_target_battery_level: float = 80.0
    taper_threshold_level: float = 80.0
    energy_per_percent: float = 0.6
    tick_seconds: int = 30
    progress_notify_minutes: int = 10
    checkpoint_minutes: int = 5
    auto_resume_minutes: int = 10
    stale_after_hours: int = 24

    @classmethod
    def from_settings(cls, s=default_settings) -> "ChargingRules":
        return cls(
            start_battery_level=s.START_BATTERY_LEVEL,
            default_target_battery_level=s.DEFAULT_TARGET_BATTERY_LEVEL,
            taper_threshold_level=s.TAPER_THRESHOLD_LEVEL,
            energy_per_percent=s.ENERGY_PER_PERCENT,
            tick_seconds=s.SESSION_TICK_SECONDS,
            progress_notify_minutes=s.PROGRESS_NOTIFY_MINUTES,
            checkpoint_minutes=s.CHECKPOINT_MINUTES,
            auto_resume_minutes=s.AUTO_RESUME_MINUTES,
            stale_after_hours=s.SESSION_STALE_HOURS,
        )


@dataclass(frozen=True)
class BillingRules:
    platform_fee_floor: float = 5.0
    platform_fee_rate: float = 0.05
    gst_rate: float = 0.18

    @classmethod
    def from_settings(cls, s=default_settings) -> "BillingRules":
        return cls(
            platform_fee_floor=s.PLATFORM_FEE_FLOOR,
            platform_fee_rate=s.PLATFORM_FEE_RATE,
            gst_rate=s.GST_RATE,
        )
