# scripts/setup/init_db.py
"""
Initialize database: creates all tables.
Run once before first launch, or after adding new models.
Usage: python scripts/setup/init_db.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from chargequeue.database import create_tables, engine
from chargequeue.config import settings
from sqlalchemy import inspect, text


def main():
    print("ChargeQueue DB Initialization")
    print("=" * 40)
    print(f"Database: {settings.DATABASE_URL}")

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("Database connection OK")
    except Exception as e:
        print(f"Cannot connect to database: {e}")
        print("\nMake sure PostgreSQL is running:")
        print("  sudo systemctl start postgresql")
        print("  # or point DATABASE_URL at sqlite:///./chargequeue.db for a local run")
        sys.exit(1)

    print("\nCreating tables...")
    create_tables()

    tables = sorted(inspect(engine).get_table_names())
    print(f"\nTables in database ({len(tables)} total):")
    for t in tables:
        print(f"   - {t}")

    print("\nDatabase ready. Seed stations, then start the backend:")
    print("   python scripts/setup/seed_stations.py")
    print("   uvicorn chargequeue.main:app --host 0.0.0.0 --port 8080 --reload")


if __name__ == "__main__":
    main()
