"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter, Depends

from linkflow.api.v1.deps import get_service

router = APIRouter()


@router.get("/health")
async def health_check(service=Depends(get_service)):
    """Service health, worker pool state and system info."""
    return {
        "status": "healthy",
        "workers": {
            "running": service.pool.running,
            "active": service.pool.active_count,
            "max_concurrent": service.config.max_concurrent_jobs,
        },
        "storage": service.repository.name,
        "jobs": len(service.store),
        "python_version": sys.version,
        "platform": platform.platform(),
    }
