# chargequeue/models/__init__.py
# Import all models here for SQLAlchemy discovery

from chargequeue.models.charging_station import ChargingStation          # noqa
from chargequeue.models.queue_entry import QueueEntryRecord              # noqa
from chargequeue.models.charging_session import ChargingSessionRecord    # noqa
