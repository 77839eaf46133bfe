# scripts/setup/seed_stations.py
"""
Seed sample charging stations.
Existing stations (matched by name) are updated in place, so it is safe to re-run.
Usage: python scripts/setup/seed_stations.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from datetime import datetime
from chargequeue.database import SessionLocal, create_tables
from chargequeue.models.charging_station import ChargingStation

STATIONS = [
    {"name": "Koramangala FastCharge", "address": "80 Feet Rd, Koramangala, Bengaluru",
     "max_power_kw": 60, "price_per_kwh": 18.5, "max_queue_length": 5, "average_session_minutes": 45},
    {"name": "Indiranagar Hub", "address": "100 Feet Rd, Indiranagar, Bengaluru",
     "max_power_kw": 50, "price_per_kwh": 16.0, "max_queue_length": 4, "average_session_minutes": 40},
    {"name": "Whitefield Tech Park", "address": "ITPL Main Rd, Whitefield, Bengaluru",
     "max_power_kw": 120, "price_per_kwh": 21.0, "max_queue_length": 8, "average_session_minutes": 30},
    {"name": "HSR Layout Community", "address": "27th Main, HSR Layout, Bengaluru",
     "max_power_kw": 22, "price_per_kwh": 12.0, "max_queue_length": 3, "average_session_minutes": 90},
]


def main():
    create_tables()
    db = SessionLocal()
    try:
        for data in STATIONS:
            station = db.query(ChargingStation).filter(ChargingStation.name == data["name"]).first()
            if station is None:
                station = ChargingStation(is_active=True, is_open=True, current_queue_length=0,
                                          created_at=datetime.utcnow(), **data)
                db.add(station)
                print(f"  + {data['name']}")
            else:
                for key, value in data.items():
                    setattr(station, key, value)
                print(f"  ~ {data['name']}")
            station.updated_at = datetime.utcnow()
        db.commit()
    finally:
        db.close()
    print(f"Seeded {len(STATIONS)} stations")


if __name__ == "__main__":
    main()
