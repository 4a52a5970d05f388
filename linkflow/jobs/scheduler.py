"""Priority ordering, queue positions and start-time estimates for pending jobs.

Ordering is by priority weight (highest first), then ``created_at`` (oldest first).
Estimates come from a list-scheduling simulation over ``max_concurrent_jobs`` slots:
free slots open now, busy slots open when their running job's remaining predicted work
is done, and each time a slot opens the highest-ranked ready job takes it. A job
rescheduled into the future waits for its time without blocking ready jobs. With a
single slot and no deferred jobs this is "now + remaining work of the running job +
predicted durations of every higher-ranked pending job". The numbers are advisory and
only describe the snapshot they were computed from.
"""

import heapq
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from linkflow.jobs.errors import JobNotFoundError
from linkflow.jobs.models import JobPriority, JobStatus, JobType, ProcessingJob, utcnow
from linkflow.jobs.queue_config import QueueConfig

logger = logging.getLogger(__name__)

# A running job is never predicted to free its slot sooner than this.
MIN_REMAINING_SECONDS = 1.0


class DurationEstimator(ABC):
    """Predicts how long a job will occupy a worker, in seconds."""

    @abstractmethod
    def estimate(self, job: ProcessingJob) -> float:
        ...


class HeuristicEstimator(DurationEstimator):
    """Fixed constants: a flat cost for single links, a per-item cost for batches."""

    def __init__(self, single_job_seconds: float = 30.0, batch_item_seconds: float = 5.0):
        self.single_job_seconds = single_job_seconds
        self.batch_item_seconds = batch_item_seconds

    def estimate(self, job: ProcessingJob) -> float:
        if job.type == JobType.SINGLE:
            return self.single_job_seconds
        return job.progress.total * self.batch_item_seconds


@dataclass
class Placement:
    queue_position: int
    estimated_start_time: datetime


def order_pending(jobs: Iterable[ProcessingJob], config: QueueConfig) -> List[ProcessingJob]:
    weights = config.priority_weights
    pending = [j for j in jobs if j.status == JobStatus.PENDING]
    pending.sort(key=lambda j: (-weights.weight(j.priority), j.created_at, j.id))
    return pending


def _remaining_seconds(job: ProcessingJob, estimator: DurationEstimator) -> float:
    total = max(1, job.progress.total)
    fraction = job.progress.remaining / total
    return max(MIN_REMAINING_SECONDS, estimator.estimate(job) * fraction)


def _slot_free_times(
    jobs: Iterable[ProcessingJob],
    config: QueueConfig,
    estimator: DurationEstimator,
    now: datetime,
) -> List[datetime]:
    capacity = config.max_concurrent_jobs
    busy = sorted(
        now + timedelta(seconds=_remaining_seconds(j, estimator))
        for j in jobs
        if j.status == JobStatus.PROCESSING
    )
    # With more running jobs than slots (capacity was lowered), a slot only opens once
    # enough of them have finished to bring occupancy back under capacity.
    free_now = max(0, capacity - len(busy))
    return [now] * free_now + busy[max(0, len(busy) - capacity):]


def plan(
    jobs: Iterable[ProcessingJob],
    config: QueueConfig,
    estimator: Optional[DurationEstimator] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Placement]:
    """Compute the placement of every pending job. Pure function of its inputs.

    Whenever a slot opens, the highest-ranked job that is ready at that moment takes it,
    exactly as the worker pool admits. A deferred job therefore never holds back the
    ready jobs ranked below it. Positions are the priority ranking regardless of deferral.
    """
    estimator = estimator or HeuristicEstimator()
    now = now or utcnow()
    jobs = list(jobs)

    slots = _slot_free_times(jobs, config, estimator, now)
    heapq.heapify(slots)

    ranked = order_pending(jobs, config)
    rank = {job.id: n for n, job in enumerate(ranked, start=1)}
    waiting = list(ranked)
    placements: Dict[str, Placement] = {}
    while waiting:
        start = heapq.heappop(slots)
        job = next((j for j in waiting if j.scheduled_for is None or j.scheduled_for <= start), None)
        if job is None:
            # Everything left is deferred past this slot; the earliest deferral takes it.
            job = min(waiting, key=lambda j: j.scheduled_for)
            start = job.scheduled_for
        waiting.remove(job)
        placements[job.id] = Placement(queue_position=rank[job.id], estimated_start_time=start)
        heapq.heappush(slots, start + timedelta(seconds=estimator.estimate(job)))
    return placements


def estimate_new_job_start(
    jobs: Iterable[ProcessingJob],
    config: QueueConfig,
    priority: JobPriority,
    estimator: Optional[DurationEstimator] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Predict when a single-link job submitted now at ``priority`` would start."""
    now = now or utcnow()
    jobs = list(jobs)
    newest = max((j.created_at for j in jobs), default=now)
    candidate = ProcessingJob(
        id="~candidate",
        user_id="~candidate",
        priority=priority,
        created_at=max(now, newest) + timedelta(microseconds=1),
        input={"items": [{"url": "https://example.invalid/"}]},
    )
    candidate.progress.total = 1
    return plan(jobs + [candidate], config, estimator, now)[candidate.id].estimated_start_time


def wait_band(start: datetime, now: datetime) -> str:
    seconds = (start - now).total_seconds()
    if seconds < 60:
        return "< 1 minute"
    if seconds < 5 * 60:
        return "< 5 minutes"
    if seconds < 15 * 60:
        return "< 15 minutes"
    if seconds < 60 * 60:
        return "< 1 hour"
    return "> 1 hour"


class Scheduler:
    """Applies ``plan`` to the job store.

    Only jobs that are still pending when their lock is taken receive a placement;
    any job that is not pending has its position and estimate cleared.
    """

    def __init__(self, store, estimator: Optional[DurationEstimator] = None):
        self._store = store
        self.estimator = estimator or HeuristicEstimator()

    async def recompute(self, config: QueueConfig, now: Optional[datetime] = None) -> Dict[str, Placement]:
        jobs = self._store.snapshot()
        placements = plan(jobs, config, self.estimator, now)
        changed = False
        for job in jobs:
            target = placements.get(job.id)
            wanted_pos = target.queue_position if target else None
            wanted_eta = target.estimated_start_time if target else None
            if job.queue_position == wanted_pos and job.estimated_start_time == wanted_eta:
                continue
            try:
                async with self._store.edit(job.id, persist=False) as draft:
                    if draft.status == JobStatus.PENDING and target:
                        draft.queue_position = wanted_pos
                        draft.estimated_start_time = wanted_eta
                    elif draft.status != JobStatus.PENDING:
                        draft.queue_position = None
                        draft.estimated_start_time = None
                changed = True
            except JobNotFoundError:
                continue
        if changed:
            await self._store.flush()
        logger.debug("Recomputed schedule for %d pending job(s)", len(placements))
        return placements
