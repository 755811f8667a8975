"""
Dispatch API routes.
Handles geofence checks, clock-in/out, route plans and crew workload.
"""
from fastapi import APIRouter, Depends, HTTPException, Request

from ..schemas.dispatch import (
    ClockInError,
    ClockInRequest,
    ClockInResult,
    ClockOutRequest,
    GeoValidateRequest,
    OptimizeRouteRequest,
    WorkloadRequest,
)
from ..services.dispatch import DispatchService
from ..services.route_optimizer import RouteInputError

router = APIRouter(prefix="/dispatch", tags=["dispatch"])

_ERROR_STATUS = {
    ClockInError.already_clocked_in: 409,
    ClockInError.no_open_session: 409,
    ClockInError.unknown_building: 404,
    ClockInError.geofence_rejected: 422,
    ClockInError.accuracy_too_low: 422,
    ClockInError.invalid_coordinate: 422,
}


def get_dispatch_service(request: Request) -> DispatchService:
    return request.app.state.dispatch_service


def _raise_for_result(result: ClockInResult) -> None:
    if result.ok:
        return
    raise HTTPException(
        status_code=_ERROR_STATUS.get(result.error, 400),
        detail={
            "error": result.error.value,
            "message": result.message,
            "distance_meters": result.distance_meters,
            # The UI offers a supervisor override for location failures
            "override_allowed": result.error in (ClockInError.geofence_rejected, ClockInError.accuracy_too_low),
        },
    )


@router.post("/geo/validate")
def geo_validate(payload: GeoValidateRequest, service: DispatchService = Depends(get_dispatch_service)):
    """Dry-run the geofence check without opening a session."""
    result = service.geo_validate(
        payload.gps.to_coordinate(),
        payload.gps.accuracy_m,
        payload.building_id,
        override_role=payload.override_role,
    )
    if result.error == ClockInError.unknown_building:
        raise HTTPException(status_code=404, detail=result.reason)
    return result


@router.post("/clock-in")
def clock_in(payload: ClockInRequest, service: DispatchService = Depends(get_dispatch_service)):
    result = service.clock_in(
        payload.worker_id,
        payload.building_id,
        payload.gps.to_coordinate(),
        payload.gps.accuracy_m,
        override_role=payload.override_role,
        override_by=payload.override_by,
    )
    _raise_for_result(result)
    return result


@router.post("/clock-out")
def clock_out(payload: ClockOutRequest, service: DispatchService = Depends(get_dispatch_service)):
    result = service.clock_out(payload.worker_id)
    _raise_for_result(result)
    return result


@router.get("/workers/{worker_id}/session")
def get_open_session(worker_id: str, service: DispatchService = Depends(get_dispatch_service)):
    session = service.ledger.open_session_for(worker_id)
    return {
        "worker_id": worker_id,
        "status": service.ledger.clock_status(worker_id).value,
        "session": session,
    }


@router.get("/workers/{worker_id}/stats")
def get_worker_stats(worker_id: str, service: DispatchService = Depends(get_dispatch_service)):
    return service.ledger.worker_stats(worker_id)


@router.get("/sessions/active")
def list_active_sessions(service: DispatchService = Depends(get_dispatch_service)):
    return service.ledger.active_sessions()


@router.post("/routes/optimize")
def optimize_route(payload: OptimizeRouteRequest, service: DispatchService = Depends(get_dispatch_service)):
    try:
        return service.optimize_route(payload.worker_id, payload.tasks, payload.start_location)
    except RouteInputError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/workload")
def compute_workload(payload: WorkloadRequest, service: DispatchService = Depends(get_dispatch_service)):
    return service.compute_workload(payload.snapshots)

