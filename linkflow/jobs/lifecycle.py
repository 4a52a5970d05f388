"""Job state machine and caller-triggered lifecycle operations."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from linkflow.jobs.errors import (
    InvalidRequestError,
    InvalidTransitionError,
    JobAccessDeniedError,
    JobNotFoundError,
)
from linkflow.jobs.models import JobPriority, JobStatus, ProcessingJob, utcnow

logger = logging.getLogger(__name__)


class QueueOperation(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    PRIORITIZE = "prioritize"
    RESCHEDULE = "reschedule"


ALLOWED_FROM: Dict[QueueOperation, FrozenSet[JobStatus]] = {
    QueueOperation.PAUSE: frozenset({JobStatus.PENDING, JobStatus.PROCESSING}),
    QueueOperation.RESUME: frozenset({JobStatus.PAUSED}),
    QueueOperation.CANCEL: frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PAUSED}),
    QueueOperation.PRIORITIZE: frozenset({JobStatus.PENDING}),
    QueueOperation.RESCHEDULE: frozenset({JobStatus.PENDING}),
}


def ensure_allowed(job: ProcessingJob, operation: QueueOperation) -> None:
    if job.status not in ALLOWED_FROM[operation]:
        raise InvalidTransitionError(
            f"Cannot {operation.value} job {job.id} with status {job.status.value}"
        )


def settle_progress(job: ProcessingJob) -> None:
    """Count every item without a result as failed so a terminal job adds up to its total."""
    job.progress.failed += job.progress.remaining
    job.progress.current_item = None


def mark_terminal(job: ProcessingJob, status: JobStatus, error: Optional[str] = None) -> None:
    job.status = status
    job.completed_at = utcnow()
    job.queue_position = None
    job.estimated_start_time = None
    if error is not None:
        job.last_error = error
    if status != JobStatus.COMPLETED:
        settle_progress(job)


def apply_operation(
    job: ProcessingJob,
    operation: QueueOperation,
    owner: str,
    new_priority: Optional[JobPriority] = None,
    scheduled_time: Optional[datetime] = None,
) -> None:
    """Validate and apply one operation to ``job`` in place.

    Raises JobAccessDeniedError when ``owner`` does not own the job and
    InvalidTransitionError when the job's status does not allow the operation.
    """
    if job.user_id != owner:
        raise JobAccessDeniedError(job.id)
    ensure_allowed(job, operation)

    if operation == QueueOperation.PAUSE:
        job.status = JobStatus.PAUSED
        job.queue_position = None
        job.estimated_start_time = None
    elif operation == QueueOperation.RESUME:
        job.status = JobStatus.PENDING
        job.worker_id = None
    elif operation == QueueOperation.CANCEL:
        mark_terminal(job, JobStatus.CANCELLED)
    elif operation == QueueOperation.PRIORITIZE:
        job.priority = new_priority
    elif operation == QueueOperation.RESCHEDULE:
        job.scheduled_for = scheduled_time


@dataclass
class ManageOutcome:
    operation: QueueOperation
    affected_job_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"{self.operation.value} operation completed: "
            f"{len(self.affected_job_ids)} successful, {len(self.errors)} failed"
        )

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "affected_jobs": len(self.affected_job_ids),
            "failed_operations": len(self.errors),
            "errors": self.errors,
            "affected_job_ids": self.affected_job_ids,
            "message": self.message,
        }


class LifecycleController:
    """Runs an operation over a batch of job ids; each job succeeds or fails on its own."""

    def __init__(self, store):
        self._store = store

    async def manage(
        self,
        owner: str,
        operation: QueueOperation,
        job_ids: List[str],
        new_priority: Optional[JobPriority] = None,
        scheduled_time: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> ManageOutcome:
        try:
            operation = QueueOperation(operation)
        except ValueError:
            raise InvalidRequestError(f"Invalid operation: {operation}") from None
        if operation == QueueOperation.PRIORITIZE and new_priority is None:
            raise InvalidRequestError("new_priority is required for prioritize")
        if operation == QueueOperation.RESCHEDULE and scheduled_time is None:
            raise InvalidRequestError("scheduled_time is required for reschedule")

        outcome = ManageOutcome(operation=operation)
        for job_id in dict.fromkeys(job_ids):
            try:
                async with self._store.edit(job_id) as draft:
                    apply_operation(draft, operation, owner, new_priority, scheduled_time)
            except (JobNotFoundError, JobAccessDeniedError, InvalidTransitionError) as exc:
                outcome.errors.append(exc.message)
                continue
            outcome.affected_job_ids.append(job_id)

        if outcome.affected_job_ids:
            logger.info(
                "%s by %s on %s%s",
                operation.value,
                owner,
                ", ".join(outcome.affected_job_ids),
                f" ({reason})" if reason else "",
            )
        return outcome
