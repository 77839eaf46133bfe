# chargequeue/routers/queue.py
"""Admission queue endpoints: join, leave, reserve, start/complete charging and reads."""

from fastapi import APIRouter, Depends
from typing import Optional

from chargequeue.dependencies import get_queue_service
from chargequeue.routers.failures import failure
from chargequeue.schemas.queue import (
    QueueEntryOut,
    QueueRequest,
    QueueStatsOut,
    ReserveRequest,
)
from chargequeue.services.errors import FailureKind
from chargequeue.services.queue_service import QueueService

router = APIRouter()


@router.post("/queue/join", response_model=QueueEntryOut, summary="Join a station queue")
async def join_queue(body: QueueRequest, queue: QueueService = Depends(get_queue_service)):
    """
    Join (or re-join) the queue at a station.
    A repeat join moves the caller's existing entry to the tail.
    """
    result = await queue.join(body.requester_id, body.station_id)
    if not result.ok:
        raise failure(result.failure)
    return result.entry


@router.post("/queue/force-join", response_model=QueueEntryOut, summary="Cancel and re-join")
async def force_join_queue(body: QueueRequest, queue: QueueService = Depends(get_queue_service)):
    result = await queue.force_join(body.requester_id, body.station_id)
    if not result.ok:
        raise failure(result.failure)
    return result.entry


@router.post("/queue/leave", summary="Leave a station queue")
async def leave_queue(body: QueueRequest, queue: QueueService = Depends(get_queue_service)):
    if not await queue.leave(body.requester_id, body.station_id):
        raise failure(FailureKind.NOT_FOUND, "No active queue entry")
    return {"requester_id": body.requester_id, "station_id": body.station_id, "status": "left"}


@router.post("/queue/reserve", response_model=QueueEntryOut, summary="Reserve the head-of-queue slot")
async def reserve_slot(body: ReserveRequest, queue: QueueService = Depends(get_queue_service)):
    if not await queue.reserve(body.requester_id, body.station_id, body.window_minutes):
        raise failure(FailureKind.NOT_ELIGIBLE, "Only the waiting entry at position 1 can reserve")
    return queue.store.find_entry(body.requester_id, body.station_id)


@router.post("/queue/start", response_model=QueueEntryOut, summary="Mark a reserved entry as charging")
async def start_charging(body: QueueRequest, queue: QueueService = Depends(get_queue_service)):
    if not await queue.start_charging(body.requester_id, body.station_id):
        raise failure(FailureKind.NOT_ELIGIBLE, "No valid reservation")
    return queue.store.find_entry(body.requester_id, body.station_id)


@router.post("/queue/complete", summary="Close a charging entry")
async def complete_charging(body: QueueRequest, queue: QueueService = Depends(get_queue_service)):
    if not await queue.complete_charging(body.requester_id, body.station_id):
        raise failure(FailureKind.NOT_ELIGIBLE, "Entry is not charging")
    return {"requester_id": body.requester_id, "station_id": body.station_id, "status": "completed"}


@router.get("/queue/users/{requester_id}", response_model=list[QueueEntryOut])
def user_queue_status(requester_id: str, queue: QueueService = Depends(get_queue_service)):
    """All open queue entries for a requester, newest first."""
    return queue.get_user_queue_status(requester_id)


@router.get("/stations/{station_id}/queue", response_model=list[QueueEntryOut])
def station_queue(station_id: int, queue: QueueService = Depends(get_queue_service)):
    return queue.get_station_queue(station_id)


@router.get("/stations/{station_id}/queue/stats", response_model=QueueStatsOut)
def station_queue_stats(station_id: int, requester_id: Optional[str] = None,
                        queue: QueueService = Depends(get_queue_service)):
    return queue.get_queue_stats(station_id, requester_id)
