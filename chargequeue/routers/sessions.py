# chargequeue/routers/sessions.py
"""Charging session endpoints: lifecycle, live status and reporting."""

from fastapi import APIRouter, Depends

from chargequeue.dependencies import get_session_service
from chargequeue.routers.failures import failure
from chargequeue.schemas.session import (
    CostBreakdownOut,
    ExtendSessionRequest,
    SessionOut,
    SessionRequest,
    SessionSummaryOut,
    StartSessionRequest,
    StopSessionRequest,
)
from chargequeue.services.errors import FailureKind
from chargequeue.services.session_service import SessionService

router = APIRouter()


@router.post("/sessions/start", response_model=SessionOut, summary="Start (or reuse) a charging session")
async def start_session(body: StartSessionRequest, sessions: SessionService = Depends(get_session_service)):
    session = await sessions.start_session(body.requester_id, body.station_id, body.queue_entry_id)
    if session is None:
        raise failure(FailureKind.RESOURCE_UNAVAILABLE, "Could not start session")
    return session


@router.post("/sessions/pause", summary="Pause an active session")
async def pause_session(body: SessionRequest, sessions: SessionService = Depends(get_session_service)):
    if not await sessions.pause_session(body.requester_id, body.station_id):
        raise failure(FailureKind.NOT_ELIGIBLE, "Session is not active")
    return {"status": "paused", "auto_resume_minutes": sessions.rules.auto_resume_minutes}


@router.post("/sessions/resume", summary="Resume a paused session")
async def resume_session(body: SessionRequest, sessions: SessionService = Depends(get_session_service)):
    if not await sessions.resume_session(body.requester_id, body.station_id):
        raise failure(FailureKind.NOT_ELIGIBLE, "Session is not paused")
    return {"status": "active"}


@router.post("/sessions/extend", summary="Raise the target battery level")
async def extend_session(body: ExtendSessionRequest, sessions: SessionService = Depends(get_session_service)):
    if not await sessions.extend_session(body.requester_id, body.station_id, body.target_battery_level):
        raise failure(FailureKind.NOT_ELIGIBLE, "Session not active or target not above current")
    return {"status": "extended", "target_battery_level": body.target_battery_level}


@router.post("/sessions/complete", response_model=SessionSummaryOut, summary="Finish an active session")
async def complete_session(body: SessionRequest, sessions: SessionService = Depends(get_session_service)):
    summary = await sessions.complete_session(body.requester_id, body.station_id)
    if summary is None:
        raise failure(FailureKind.NOT_ELIGIBLE, "No active session")
    await sessions.queue.complete_charging(body.requester_id, body.station_id)
    return summary


@router.post("/sessions/stop", response_model=SessionSummaryOut, summary="Stop a session early")
async def stop_session(body: StopSessionRequest, sessions: SessionService = Depends(get_session_service)):
    summary = await sessions.stop_session(body.requester_id, body.station_id, body.reason)
    if summary is None:
        raise failure(FailureKind.NOT_FOUND, "No live session")
    return summary


@router.get("/sessions/status/{requester_id}/{station_id}", summary="Live session progress")
def session_status(requester_id: str, station_id: int, sessions: SessionService = Depends(get_session_service)):
    status = sessions.get_session_status(requester_id, station_id)
    if status is None:
        raise failure(FailureKind.NOT_FOUND, "No live session")
    return status


@router.get("/sessions/cost/{requester_id}/{station_id}", response_model=CostBreakdownOut)
def session_cost(requester_id: str, station_id: int, sessions: SessionService = Depends(get_session_service)):
    breakdown = sessions.get_cost_breakdown(requester_id, station_id)
    if breakdown is None:
        raise failure(FailureKind.NOT_FOUND, "No live session")
    return breakdown.rounded()


@router.get("/sessions/history/{requester_id}", summary="Recent sessions for a requester")
def session_history(requester_id: str, limit: int = 10, sessions: SessionService = Depends(get_session_service)):
    return sessions.get_session_history(requester_id, limit)


@router.get("/sessions/stats/users/{requester_id}", summary="Lifetime charging stats for a requester")
def user_stats(requester_id: str, sessions: SessionService = Depends(get_session_service)):
    stats = sessions.get_user_stats(requester_id)
    if stats is None:
        raise failure(FailureKind.PERSISTENCE_ERROR)
    return stats


@router.get("/sessions/live", summary="Real-time view of every live session")
def live_sessions(sessions: SessionService = Depends(get_session_service)):
    return sessions.get_realtime_overview()


@router.get("/sessions/{session_id}", summary="Stored record of one session")
def session_record(session_id: str, sessions: SessionService = Depends(get_session_service)):
    record = sessions.get_session_record(session_id)
    if record is None:
        raise failure(FailureKind.NOT_FOUND, f"Session '{session_id}' not found")
    return record


# ── Admin ────────────────────────────────────────────────────────────────────
@router.post("/sessions/{session_id}/force-complete", response_model=SessionSummaryOut)
async def force_complete(session_id: str, sessions: SessionService = Depends(get_session_service)):
    summary = await sessions.force_complete_session(session_id)
    if summary is None:
        raise failure(FailureKind.NOT_FOUND, f"Session '{session_id}' is not live")
    return summary
