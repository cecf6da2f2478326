
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_service
from app.constants.job_state import JobState
from app.schemas import JobCreate, JobResponse, QueueStats, QueueStatsByKind, StaleJobsReset
from app.services.job_service import JobService

router = APIRouter()


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job(
        job_data: JobCreate,
        svc: JobService = Depends(get_service)
):
    return await svc.create_job(job_data)


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
        state: Optional[JobState] = Query(None, description="Filter by job state"),
        kind: Optional[str] = Query(None, description="Filter by job kind"),
        skip: int = Query(0, ge=0, description="Number of jobs to skip"),
        limit: int = Query(50, ge=1, le=1000, description="Maximum jobs to return"),
        svc: JobService = Depends(get_service)
):
    return await svc.list_jobs(state, kind, skip, limit)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
        job_id: int,
        svc: JobService = Depends(get_service)
):
    return await svc.get_job(job_id)


@router.get("/queue/stats", response_model=QueueStats)
async def get_queue_stats(
        svc: JobService = Depends(get_service)
):
    return await svc.get_queue_stats()


@router.get("/queue/stats/kinds", response_model=QueueStatsByKind)
async def get_stats_by_kind(
        svc: JobService = Depends(get_service)
):
    return await svc.get_stats_by_kind()


# Admin endpoints
@router.post("/admin/jobs/reset-stale", response_model=StaleJobsReset)
async def reset_stale_jobs(
        timeout_seconds: int = Query(300, ge=1, description="Seconds after which active jobs are considered stale"),
        svc: JobService = Depends(get_service)
):
    return await svc.reset_stale_jobs(timeout_seconds)
