"""Queue service: the transport-agnostic entry point for every queue operation.

Wires the job store, scheduler, lifecycle controller, worker pool, metrics aggregator
and maintenance sweeper together. After every state mutation the schedule is recomputed
and the worker pool is woken so positions, estimates and admission stay current.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from linkflow.jobs.errors import (
    InvalidRequestError,
    JobNotCompletedError,
    JobNotFoundError,
    QueueFullError,
)
from linkflow.jobs.lifecycle import LifecycleController, ManageOutcome, QueueOperation, apply_operation
from linkflow.jobs.maintenance import MaintenanceSweeper
from linkflow.jobs.metrics import ApiCallCounter, MetricsAggregator, PsutilResourceProbe, ResourceProbe
from linkflow.jobs.models import (
    JobInput,
    JobOutput,
    JobPriority,
    JobStatus,
    JobType,
    ProcessingFeedback,
    ProcessingItem,
    ProcessingJob,
    ProcessingSettings,
    utcnow,
)
from linkflow.jobs.queue_config import QueueConfig, deep_merge, format_validation_errors, merge_config
from linkflow.jobs.scheduler import DurationEstimator, Scheduler, estimate_new_job_start, wait_band
from linkflow.jobs.store import JobStore
from linkflow.jobs.worker_pool import WorkerPool
from linkflow.processing.analyzer import ContentAnalyzer
from linkflow.processing.duplicates import LinkIndex
from linkflow.processing.extractor import ContentExtractor
from linkflow.processing.item_processor import ItemProcessor
from linkflow.storage.repository import JobRepository

logger = logging.getLogger(__name__)

ItemLike = Union[ProcessingItem, Mapping[str, Any]]


def build_settings(overrides: Union[ProcessingSettings, Mapping[str, Any], None]) -> ProcessingSettings:
    """Merge caller-supplied settings over the defaults."""
    if isinstance(overrides, ProcessingSettings):
        return overrides
    try:
        return ProcessingSettings.model_validate(deep_merge(ProcessingSettings().model_dump(), overrides or {}))
    except ValidationError as exc:
        raise InvalidRequestError("Invalid settings: " + "; ".join(format_validation_errors(exc))) from exc


def build_items(raw: Sequence[ItemLike]) -> List[ProcessingItem]:
    try:
        items = [i if isinstance(i, ProcessingItem) else ProcessingItem.model_validate(i) for i in raw]
    except ValidationError as exc:
        raise InvalidRequestError("Invalid items: " + "; ".join(format_validation_errors(exc))) from exc
    if len({i.id for i in items}) != len(items):
        raise InvalidRequestError("Item ids must be unique within a job")
    return items


class QueueService:
    def __init__(
        self,
        repository: JobRepository,
        extractor: ContentExtractor,
        analyzer: Optional[ContentAnalyzer],
        link_index: LinkIndex,
        estimator: Optional[DurationEstimator] = None,
        probe: Optional[ResourceProbe] = None,
        poll_interval: float = 1.0,
        sleep=asyncio.sleep,
    ):
        self.repository = repository
        self.config = QueueConfig()
        self.store = JobStore(repository)
        self.scheduler = Scheduler(self.store, estimator)
        self.lifecycle = LifecycleController(self.store)
        self.api_counter = ApiCallCounter()
        self.probe = probe or PsutilResourceProbe(self.api_counter)
        processor = ItemProcessor(extractor, analyzer, link_index, self.api_counter, sleep)
        self.pool = WorkerPool(
            self.store, self.scheduler, processor, lambda: self.config, self.probe, poll_interval
        )
        self.metrics = MetricsAggregator(repository, self.probe)
        self.sweeper = MaintenanceSweeper(self.store)
        self._feedback: List[ProcessingFeedback] = []
        self._submit_lock = asyncio.Lock()
        self._config_lock = asyncio.Lock()
        self._feedback_lock = asyncio.Lock()

    # -- lifecycle ------------------------------------------------------------

    async def start(self, start_workers: bool = True) -> None:
        await self.store.load()
        self.config = await asyncio.to_thread(self.repository.load_config) or QueueConfig()
        await self.metrics.load()
        self._feedback = await asyncio.to_thread(self.repository.load_feedback)
        if start_workers:
            await self.pool.start()
        else:
            await self.scheduler.recompute(self.config)

    async def stop(self) -> None:
        if self.pool.running:
            await self.pool.stop()

    async def _changed(self) -> None:
        await self.scheduler.recompute(self.config)
        self.pool.notify()

    def _owned(self, owner: str, job_id: str) -> ProcessingJob:
        job = self.store.get(job_id)
        if job is None or job.user_id != owner:
            raise JobNotFoundError(job_id)
        return job

    # -- jobs -----------------------------------------------------------------

    async def submit(
        self,
        owner: str,
        items: Sequence[ItemLike],
        settings: Union[ProcessingSettings, Mapping[str, Any], None] = None,
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
    ) -> ProcessingJob:
        if not items:
            raise InvalidRequestError("At least one item is required")
        limit = self.config.processing_limits.max_items_per_batch
        if len(items) > limit:
            raise InvalidRequestError(f"Batch of {len(items)} items exceeds the maximum of {limit}")
        try:
            priority = JobPriority(priority)
        except ValueError:
            raise InvalidRequestError(f"Invalid priority: {priority}") from None
        parsed_items = build_items(items)
        parsed_settings = build_settings(settings)

        job = ProcessingJob(
            user_id=owner,
            type=JobType.SINGLE if len(parsed_items) == 1 else JobType.BATCH,
            priority=priority,
            input=JobInput(items=parsed_items, settings=parsed_settings),
        )
        job.progress.total = len(parsed_items)

        async with self._submit_lock:
            pending = sum(1 for j in self.store.snapshot() if j.status == JobStatus.PENDING)
            if pending >= self.config.max_queue_size:
                raise QueueFullError(f"Queue is full ({pending} pending jobs). Please try again later.")
            await self.store.add(job)

        logger.info("Created %s job %s for %s with %d item(s)", job.type.value, job.id, owner, len(parsed_items))
        await self._changed()
        return self.store.get(job.id)

    def get_status(self, owner: str, job_id: str) -> ProcessingJob:
        return self._owned(owner, job_id)

    def list_jobs(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        priority: Optional[JobPriority] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[ProcessingJob], int]:
        """Caller's jobs: pending first in queue order, then the rest newest first."""
        jobs = [j for j in self.store.snapshot() if j.user_id == owner]
        if status is not None:
            jobs = [j for j in jobs if j.status == JobStatus(status)]
        if priority is not None:
            jobs = [j for j in jobs if j.priority == JobPriority(priority)]
        pending = sorted(
            (j for j in jobs if j.status == JobStatus.PENDING),
            key=lambda j: (j.queue_position is None, j.queue_position or 0, j.created_at),
        )
        others = sorted((j for j in jobs if j.status != JobStatus.PENDING), key=lambda j: j.created_at, reverse=True)
        ordered = pending + others
        return ordered[offset:offset + limit], len(ordered)

    def get_results(self, owner: str, job_id: str) -> JobOutput:
        job = self._owned(owner, job_id)
        if job.status != JobStatus.COMPLETED:
            raise JobNotCompletedError(job_id, job.status.value)
        return job.output or JobOutput()

    def get_position(self, owner: str, job_id: str) -> Dict[str, Any]:
        job = self._owned(owner, job_id)
        return {
            "job_id": job.id,
            "status": job.status.value,
            "queue_position": job.queue_position,
            "estimated_start_time": job.estimated_start_time,
            "jobs_ahead": (job.queue_position - 1) if job.queue_position else 0,
        }

    async def cancel(self, owner: str, job_id: str) -> ProcessingJob:
        async with self.store.edit(job_id) as draft:
            if draft.user_id != owner:
                raise JobNotFoundError(job_id)
            apply_operation(draft, QueueOperation.CANCEL, owner)
        logger.info("Job %s cancelled by %s", job_id, owner)
        await self._changed()
        return self.store.get(job_id)

    async def manage(
        self,
        owner: str,
        operation: Union[QueueOperation, str],
        job_ids: Sequence[str],
        new_priority: Optional[JobPriority] = None,
        scheduled_time: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> ManageOutcome:
        if not job_ids:
            raise InvalidRequestError("job_ids must not be empty")
        if new_priority is not None:
            try:
                new_priority = JobPriority(new_priority)
            except ValueError:
                raise InvalidRequestError(f"Invalid priority: {new_priority}") from None
        if scheduled_time is not None and scheduled_time.tzinfo is None:
            scheduled_time = scheduled_time.replace(tzinfo=timezone.utc)
        outcome = await self.lifecycle.manage(owner, operation, list(job_ids), new_priority, scheduled_time, reason)
        if outcome.affected_job_ids:
            await self._changed()
        return outcome

    # -- queue ----------------------------------------------------------------

    def get_queue_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        jobs = self.store.snapshot()
        config = self.config
        counts = {status.value: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status.value] += 1
        pending_by_priority = {p.value: 0 for p in JobPriority}
        for job in jobs:
            if job.status == JobStatus.PENDING:
                pending_by_priority[job.priority.value] += 1

        processing = counts[JobStatus.PROCESSING.value]
        capacity = config.max_concurrent_jobs
        waits = {
            p.value: wait_band(estimate_new_job_start(jobs, config, p, self.scheduler.estimator, now), now)
            for p in JobPriority
        }
        return {
            "queue_stats": {**counts, "total": len(jobs)},
            "priority_queue": pending_by_priority,
            "capacity": {
                "max_concurrent": capacity,
                "current_processing": processing,
                "available_slots": max(0, capacity - processing),
                "queue_utilization": round(100.0 * processing / capacity, 2),
                "max_queue_size": config.max_queue_size,
            },
            "estimated_wait_times": waits,
        }

    async def get_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.metrics.record(self.store.snapshot(), self.config, self.pool.active_count, now)

    def get_config(self) -> QueueConfig:
        return self.config.model_copy(deep=True)

    async def update_config(self, updates: Mapping[str, Any]) -> QueueConfig:
        async with self._config_lock:
            merged = merge_config(self.config, updates)
            await asyncio.to_thread(self.repository.save_config, merged)
            self.config = merged
        logger.info("Queue config updated: %s", ", ".join(sorted(updates)) if isinstance(updates, Mapping) else updates)
        await self._changed()
        return self.get_config()

    async def cleanup(
        self,
        cleanup_type: str = "completed",
        older_than_days: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        return await self.sweeper.sweep(cleanup_type, self.config, older_than_days, now)

    # -- feedback -------------------------------------------------------------

    async def submit_feedback(self, owner: str, job_id: str, payload: Mapping[str, Any]) -> ProcessingFeedback:
        job = self._owned(owner, job_id)
        try:
            feedback = ProcessingFeedback.model_validate({**payload, "user_id": owner, "job_id": job_id})
        except ValidationError as exc:
            raise InvalidRequestError("Invalid feedback: " + "; ".join(format_validation_errors(exc))) from exc
        if feedback.item_id and feedback.item_id not in {i.id for i in job.input.items}:
            raise InvalidRequestError(f"Item {feedback.item_id} is not part of job {job_id}")

        async with self._feedback_lock:
            updated = self._feedback + [feedback]
            await asyncio.to_thread(self.repository.save_feedback, updated)
            self._feedback = updated
        logger.info("Feedback %s (%s, rating %d) recorded for job %s", feedback.id, feedback.feedback_type.value, feedback.rating, job_id)
        return feedback

    def list_feedback(self, owner: str, job_id: str) -> List[ProcessingFeedback]:
        self._owned(owner, job_id)
        return [f for f in self._feedback if f.job_id == job_id and f.user_id == owner]
