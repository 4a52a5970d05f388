"""Queue API: batch lifecycle operations, status, metrics, config and cleanup."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from linkflow.api.v1.deps import get_service
from linkflow.auth.supabase_auth import get_current_user_id

router = APIRouter()


class ManageRequest(BaseModel):
    operation: str
    job_ids: List[str]
    new_priority: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    reason: Optional[str] = None


class CleanupRequest(BaseModel):
    cleanup_type: str = "completed"
    older_than_days: Optional[float] = None


@router.post("/queue/manage")
async def manage_jobs(
    request: ManageRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_service),
):
    """Apply pause / resume / cancel / prioritize / reschedule to several jobs at once."""
    outcome = await service.manage(
        user_id,
        request.operation,
        request.job_ids,
        new_priority=request.new_priority,
        scheduled_time=request.scheduled_time,
        reason=request.reason,
    )
    return outcome.to_dict()


@router.get("/queue/status")
async def queue_status(user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    return service.get_queue_status()


@router.get("/queue/metrics")
async def queue_metrics(user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    metrics = await service.get_metrics()
    return {
        "current": metrics["current"].model_dump(mode="json"),
        "history": [m.model_dump(mode="json") for m in metrics["history"]],
    }


@router.get("/queue/config")
async def get_queue_config(user_id: str = Depends(get_current_user_id), service=Depends(get_service)):
    return service.get_config().model_dump()


@router.patch("/queue/config")
async def update_queue_config(
    updates: Dict[str, Any],
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_service),
):
    config = await service.update_config(updates)
    return {"config": config.model_dump(), "message": "Queue configuration updated"}


@router.post("/queue/cleanup")
async def cleanup_jobs(
    request: CleanupRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_service),
):
    """Remove terminal jobs past their retention window (or ``older_than_days``)."""
    counts = await service.cleanup(request.cleanup_type, request.older_than_days)
    return {
        "cleanup_type": request.cleanup_type,
        "removed_jobs": counts["removed"],
        "remaining_jobs": counts["remaining"],
        "message": f"Cleaned up {counts['removed']} {request.cleanup_type} jobs",
    }
