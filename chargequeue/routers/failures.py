# chargequeue/routers/failures.py
"""Translate core failure kinds into HTTP errors."""

from fastapi import HTTPException

from chargequeue.services.errors import FailureKind

HTTP_STATUS = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.QUEUE_FULL: 409,
    FailureKind.NOT_ELIGIBLE: 409,
    FailureKind.RESOURCE_UNAVAILABLE: 503,
    FailureKind.PERSISTENCE_ERROR: 503,
}


def failure(kind: FailureKind, detail: str = None) -> HTTPException:
    return HTTPException(status_code=HTTP_STATUS[kind], detail=detail or kind.value)
