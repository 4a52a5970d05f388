"""Retention-based cleanup of terminal jobs."""

import logging
from datetime import datetime
from typing import Dict, Optional

from linkflow.jobs.errors import InvalidRequestError
from linkflow.jobs.models import JobStatus, ProcessingJob, utcnow
from linkflow.jobs.queue_config import QueueConfig

logger = logging.getLogger(__name__)

CLEANUP_TYPES = {
    "completed": (JobStatus.COMPLETED,),
    "failed": (JobStatus.FAILED,),
    "cancelled": (JobStatus.CANCELLED,),
    "all": (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED),
}


def retention_days(status: JobStatus, config: QueueConfig) -> float:
    maintenance = config.maintenance
    if status == JobStatus.COMPLETED:
        return maintenance.cleanup_completed_jobs_after_days
    if status == JobStatus.FAILED:
        return maintenance.cleanup_failed_jobs_after_days
    return maintenance.cleanup_cancelled_jobs_after_days


def age_days(job: ProcessingJob, now: datetime) -> float:
    reference = job.completed_at or job.created_at
    return (now - reference).total_seconds() / 86400


class MaintenanceSweeper:
    """Removes terminal jobs past their retention window. Runs only when invoked."""

    def __init__(self, store):
        self._store = store

    def expired(
        self,
        cleanup_type: str,
        config: QueueConfig,
        older_than_days: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list:
        if cleanup_type not in CLEANUP_TYPES:
            raise InvalidRequestError(
                f"Invalid cleanup type: {cleanup_type} (expected one of {', '.join(CLEANUP_TYPES)})"
            )
        if older_than_days is not None and older_than_days < 0:
            raise InvalidRequestError("older_than_days must be >= 0")
        now = now or utcnow()
        statuses = CLEANUP_TYPES[cleanup_type]
        ids = []
        for job in self._store.snapshot():
            if job.status not in statuses:
                continue
            threshold = older_than_days if older_than_days is not None else retention_days(job.status, config)
            if age_days(job, now) >= threshold:
                ids.append(job.id)
        return ids

    async def sweep(
        self,
        cleanup_type: str,
        config: QueueConfig,
        older_than_days: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        ids = self.expired(cleanup_type, config, older_than_days, now)
        removed = await self._store.remove(ids)
        remaining = len(self._store)
        logger.info("Cleanup (%s) removed %d job(s); %d remaining", cleanup_type, removed, remaining)
        return {"removed": removed, "remaining": remaining}
