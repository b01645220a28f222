# src/sluice_core/api.py
"""REST boundary for the CRUD/UI layer. Mount with `app.include_router(create_router(service))`."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from .errors import ConfigurationError, DuplicateJobError, JobStateError, NotFoundError, SyncError
from .models import JobFilter, JobStatus
from .service import SyncService


class IdRange(BaseModel):
    start: int
    end: int


class TriggerRequest(BaseModel):
    trigger_type: Optional[str] = None
    row_limit: Optional[int] = None
    after_id: Optional[int] = None
    ranges: Optional[List[IdRange]] = None


class WorkerStopRequest(BaseModel):
    cancel_running: bool = False
    timeout: Optional[float] = None


class ScheduleUpdate(BaseModel):
    interval: str


class ScheduleToggle(BaseModel):
    is_active: bool


def _http_error(e: SyncError) -> HTTPException:
    if isinstance(e, DuplicateJobError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "job_id": e.existing_job_id},
        )
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (JobStateError, ConfigurationError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def _schedule_dict(schedule) -> dict:
    return {
        "id": schedule.id,
        "dataset_id": schedule.dataset_id,
        "interval": schedule.interval_code,
        "cron_expression": schedule.cron_expression,
        "is_active": schedule.is_active,
        "last_run_at": schedule.last_run_at.isoformat() if schedule.last_run_at else None,
        "next_run_at": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
    }


def create_router(service: SyncService) -> APIRouter:
    router = APIRouter(tags=["etl"])

    @router.post("/datasets/{dataset_id}/trigger", status_code=status.HTTP_202_ACCEPTED)
    def trigger(dataset_id: int, payload: Optional[TriggerRequest] = None):
        try:
            payload = payload or TriggerRequest()
            job = service.trigger(
                dataset_id,
                payload.trigger_type,
                row_limit=payload.row_limit,
                after_id=payload.after_id,
                ranges=[r.model_dump() for r in payload.ranges] if payload.ranges is not None else None,
            )
        except SyncError as e:
            raise _http_error(e)
        return {"success": True, "data": job.to_dict()}

    @router.post("/etl/trigger-all", status_code=status.HTTP_202_ACCEPTED)
    def trigger_all():
        result = service.trigger_all()
        return {
            "success": True,
            "message": f"{len(result['queued'])} dataset(s) queued",
            "data": result,
        }

    @router.get("/jobs")
    def list_jobs(
        dataset_id: Optional[int] = None,
        job_status: Optional[List[JobStatus]] = Query(default=None, alias="status"),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        jobs = service.list_jobs(JobFilter(dataset_id=dataset_id, statuses=job_status, limit=limit))
        return {"success": True, "data": [j.to_dict() for j in jobs]}

    @router.get("/jobs/{job_id}")
    def get_job(job_id: int):
        try:
            return {"success": True, "data": service.get_job(job_id).to_dict()}
        except SyncError as e:
            raise _http_error(e)

    @router.post("/jobs/{job_id}/cancel")
    def cancel(job_id: int):
        try:
            job = service.cancel(job_id)
        except SyncError as e:
            raise _http_error(e)
        return {"success": True, "data": job.to_dict()}

    @router.get("/worker/status")
    def worker_status():
        return {"success": True, "data": service.worker_status()}

    @router.post("/worker/start")
    def worker_start():
        return {"success": True, "data": service.worker_start()}

    @router.post("/worker/stop")
    def worker_stop(payload: Optional[WorkerStopRequest] = None):
        payload = payload or WorkerStopRequest()
        return {"success": True, "data": service.worker_stop(payload.cancel_running, payload.timeout)}

    @router.post("/worker/restart")
    def worker_restart(payload: Optional[WorkerStopRequest] = None):
        payload = payload or WorkerStopRequest()
        return {"success": True, "data": service.worker_restart(payload.cancel_running, payload.timeout)}

    @router.get("/locks")
    def list_locks():
        return {"success": True, "data": [lock.to_dict() for lock in service.list_locks()]}

    @router.delete("/locks/{dataset_id}")
    def delete_lock(dataset_id: int):
        if not service.delete_lock(dataset_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No lock for dataset {dataset_id}")
        return {"success": True}

    @router.delete("/locks")
    def delete_all_locks():
        return {"success": True, "data": {"cleared": service.delete_all_locks()}}

    @router.get("/schedules")
    def list_schedules():
        return {"success": True, "data": [_schedule_dict(s) for s in service.list_schedules()]}

    @router.put("/datasets/{dataset_id}/schedule")
    def update_schedule(dataset_id: int, payload: ScheduleUpdate):
        try:
            schedule = service.update_schedule(dataset_id, payload.interval)
        except SyncError as e:
            raise _http_error(e)
        return {"success": True, "data": _schedule_dict(schedule)}

    @router.put("/schedules/{schedule_id}")
    def toggle_schedule(schedule_id: int, payload: ScheduleToggle):
        try:
            schedule = service.toggle_schedule(schedule_id, payload.is_active)
        except SyncError as e:
            raise _http_error(e)
        return {"success": True, "data": _schedule_dict(schedule)}

    @router.get("/health")
    def health():
        return {"success": True, "data": service.health().to_dict()}

    return router
