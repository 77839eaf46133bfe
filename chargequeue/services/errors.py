# chargequeue/services/errors.py
"""
Failure taxonomy shared by the queue and session services.
Precondition failures are returned as values (FailureKind), never raised.
PersistenceError is the only exception that crosses the adapter boundary.
"""

from enum import Enum


class FailureKind(str, Enum):
    RESOURCE_UNAVAILABLE = "resource_unavailable"   # station missing, inactive or closed
    QUEUE_FULL = "queue_full"
    NOT_ELIGIBLE = "not_eligible"                   # wrong state for the operation
    NOT_FOUND = "not_found"
    PERSISTENCE_ERROR = "persistence_error"


class PersistenceError(Exception):
    """Durable-store failure. Raised by the persistence adapter only."""
