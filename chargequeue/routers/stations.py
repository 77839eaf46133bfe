# chargequeue/routers/stations.py
"""Station directory reads, station stats and emergency stop."""

from fastapi import APIRouter, Depends

from chargequeue.dependencies import CoreServices, get_core
from chargequeue.routers.failures import failure
from chargequeue.schemas.station import StationOut
from chargequeue.services.errors import FailureKind, PersistenceError

router = APIRouter()


@router.get("/stations", response_model=list[StationOut])
def list_stations(only_active: bool = True, core: CoreServices = Depends(get_core)):
    try:
        return core.directory.list_stations(only_active)
    except PersistenceError:
        raise failure(FailureKind.PERSISTENCE_ERROR)


@router.get("/stations/{station_id}", response_model=StationOut)
def get_station(station_id: int, core: CoreServices = Depends(get_core)):
    try:
        station = core.directory.get_resource(station_id)
    except PersistenceError:
        raise failure(FailureKind.PERSISTENCE_ERROR)
    if station is None:
        raise failure(FailureKind.NOT_FOUND, f"Station {station_id} not found")
    return station


@router.get("/stations/{station_id}/stats", summary="Usage and revenue for a station")
def station_stats(station_id: int, core: CoreServices = Depends(get_core)):
    stats = core.sessions.get_station_stats(station_id)
    if stats is None:
        raise failure(FailureKind.PERSISTENCE_ERROR)
    stats["queue"] = core.queue.get_queue_stats(station_id).total_in_queue
    return stats


@router.post("/stations/{station_id}/emergency-stop", summary="Stop every live session at a station")
async def emergency_stop(station_id: int, core: CoreServices = Depends(get_core)):
    stopped = await core.sessions.emergency_stop_station(station_id)
    return {"station_id": station_id, "stopped_sessions": stopped}


@router.get("/stations/{station_id}/sessions", summary="Recent sessions at a station")
def station_sessions(station_id: int, limit: int = 50, core: CoreServices = Depends(get_core)):
    try:
        return core.persistence.sessions_by_station(station_id, limit)
    except PersistenceError:
        raise failure(FailureKind.PERSISTENCE_ERROR)
