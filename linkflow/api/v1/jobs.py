"""Job API: submit link-processing jobs, poll status, fetch results, cancel, feedback."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from linkflow.api.v1.deps import get_service
from linkflow.auth.supabase_auth import get_current_user_id
from linkflow.jobs.models import JobPriority, JobStatus, ProcessingJob

router = APIRouter()


class JobSubmitRequest(BaseModel):
    items: List[Dict[str, Any]]
    settings: Optional[Dict[str, Any]] = None
    priority: str = "normal"


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    type: str
    queue_position: Optional[int] = None
    estimated_start_time: Optional[str] = None
    message: str


def job_view(job: ProcessingJob) -> dict:
    response = {
        "job_id": job.id,
        "type": job.type.value,
        "status": job.status.value,
        "priority": job.priority.value,
        "progress": job.progress.model_dump(),
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "queue_position": job.queue_position,
        "estimated_start_time": job.estimated_start_time.isoformat() if job.estimated_start_time else None,
        "scheduled_for": job.scheduled_for.isoformat() if job.scheduled_for else None,
        "worker_id": job.worker_id,
        "retry_count": job.retry_count,
        "resource_usage": job.resource_usage.model_dump(),
    }
    if job.last_error:
        response["error"] = job.last_error
    return response


@router.post("/jobs", response_model=JobSubmitResponse)
async def submit_job(
    request: JobSubmitRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_service),
):
    """Queue one link (single job) or several (batch job)."""
    job = await service.submit(user_id, request.items, request.settings, request.priority)
    return JobSubmitResponse(
        job_id=job.id,
        status=job.status.value,
        type=job.type.value,
        queue_position=job.queue_position,
        estimated_start_time=job.estimated_start_time.isoformat() if job.estimated_start_time else None,
        message="Job submitted successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = None,
    priority: Optional[JobPriority] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_service),
):
    jobs, total = service.list_jobs(user_id, status, priority, limit, offset)
    return {
        "jobs": [job_view(j) for j in jobs],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(jobs) < total,
        },
    }


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    return job_view(service.get_status(user_id, job_id))


@router.get("/jobs/{job_id}/results")
async def get_job_results(job_id: str, user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    """Per-item results and the job summary. Only available once the job has completed."""
    output = service.get_results(user_id, job_id)
    return {"job_id": job_id, **output.model_dump(mode="json")}


@router.get("/jobs/{job_id}/position")
async def get_job_position(job_id: str, user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    position = service.get_position(user_id, job_id)
    eta = position["estimated_start_time"]
    return {**position, "estimated_start_time": eta.isoformat() if eta else None}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    job = await service.cancel(user_id, job_id)
    return {"job_id": job.id, "status": job.status.value, "message": "Job cancelled"}


@router.post("/jobs/{job_id}/feedback")
async def submit_feedback(
    job_id: str,
    payload: Dict[str, Any],
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_service),
):
    feedback = await service.submit_feedback(user_id, job_id, payload)
    return {"feedback": feedback.model_dump(mode="json"), "message": "Feedback recorded"}


@router.get("/jobs/{job_id}/feedback")
async def list_feedback(job_id: str, user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    items = service.list_feedback(user_id, job_id)
    return {"feedback": [f.model_dump(mode="json") for f in items], "count": len(items)}
