# chargequeue/services/charging_model.py
"""
Deterministic charging simulation and billing.

Progress is a pure function of elapsed charging minutes. It is re-derived on
every tick and on every status query rather than accumulated, so repeated
evaluation never drifts. There is no hardware feed behind these figures.
"""

from dataclasses import dataclass

from chargequeue.services.rules import BillingRules, ChargingRules


@dataclass(frozen=True)
class ChargingProgress:
    battery_level: float
    charging_rate: float
    energy_added: float
    current_cost: float
    efficiency: float
    minutes_remaining: float
    is_complete: bool
    tapering: bool = False

    @property
    def status_message(self) -> str:
        if self.is_complete:
            return "Charging complete"
        if self.charging_rate == 0:
            return "Waiting for power"
        return "Nearly full, charging is slowing down" if self.tapering else "Charging in progress"


@dataclass(frozen=True)
class CostBreakdown:
    energy_rate: float
    energy_consumed: float
    energy_cost: float
    platform_fee: float
    gst_rate: float
    gst: float
    total_cost: float

    def rounded(self) -> dict:
        """Presentation view: money to 2 decimals."""
        return {
            "energy_rate": round(self.energy_rate, 2),
            "energy_consumed": round(self.energy_consumed, 3),
            "energy_cost": round(self.energy_cost, 2),
            "platform_fee": round(self.platform_fee, 2),
            "gst_rate": round(self.gst_rate * 100, 2),
            "gst": round(self.gst, 2),
            "total_cost": round(self.total_cost, 2),
        }


def time_to_target(rated_power: float, target_level: float, rules: ChargingRules) -> float:
    """Minutes from start level to target at rated power."""
    battery_range = target_level - rules.start_battery_level
    if battery_range <= 0:
        return 0.0
    if rated_power <= 0:
        return float("inf")
    return battery_range * 60 / rated_power


def calculate_progress(rated_power: float, target_level: float, price_per_unit: float,
                       elapsed_minutes: float, rules: ChargingRules) -> ChargingProgress:
    start = rules.start_battery_level
    battery_range = max(0.0, target_level - start)
    horizon = time_to_target(rated_power, target_level, rules)

    if elapsed_minutes < horizon:
        level = start + (elapsed_minutes / horizon) * battery_range
        rate = rated_power * 0.5 if level >= rules.taper_threshold_level else rated_power
        remaining = horizon - elapsed_minutes
    else:
        level = max(start, target_level)
        rate = 0.0
        remaining = 0.0

    level = min(level, max(start, target_level))
    energy = (level - start) * rules.energy_per_percent
    return ChargingProgress(
        battery_level=level,
        charging_rate=rate,
        energy_added=energy,
        current_cost=energy * price_per_unit,
        efficiency=max(90.0, 100.0 - elapsed_minutes * 0.1),
        minutes_remaining=remaining,
        is_complete=level >= target_level,
        tapering=0 < rate < rated_power,
    )


def cost_breakdown(energy_consumed: float, price_per_unit: float, rules: BillingRules) -> CostBreakdown:
    energy_cost = energy_consumed * price_per_unit
    platform_fee = max(rules.platform_fee_floor, energy_cost * rules.platform_fee_rate)
    gst = (energy_cost + platform_fee) * rules.gst_rate
    return CostBreakdown(
        energy_rate=price_per_unit,
        energy_consumed=energy_consumed,
        energy_cost=energy_cost,
        platform_fee=platform_fee,
        gst_rate=rules.gst_rate,
        gst=gst,
        total_cost=energy_cost + platform_fee + gst,
    )


def format_duration(minutes: float) -> str:
    minutes = int(minutes)
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if hours else f"{mins}m"
