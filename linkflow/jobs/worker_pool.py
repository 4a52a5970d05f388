"""Bounded in-process worker pool.

A dispatch loop admits the highest-ranked ready pending job whenever one of the
``max_concurrent_jobs`` slots is free and runs it as its own asyncio task. Items within
a job run sequentially; the job's status is checked at every item boundary so pause and
cancel take effect cooperatively. Every job mutation goes through ``JobStore.edit``.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from linkflow.jobs.dispatcher import JobDispatcher
from linkflow.jobs.errors import JobNotFoundError, StorageError
from linkflow.jobs.lifecycle import mark_terminal
from linkflow.jobs.metrics import ResourceProbe, StaticResourceProbe
from linkflow.jobs.models import (
    ItemStatus,
    JobOutput,
    JobStatus,
    JobType,
    ProcessingJob,
    ProcessingResult,
    utcnow,
)
from linkflow.jobs.queue_config import QueueConfig
from linkflow.jobs.scheduler import Scheduler, order_pending
from linkflow.jobs.store import JobStore
from linkflow.processing.item_processor import ItemProcessor
from linkflow.processing.summary import build_summary

logger = logging.getLogger(__name__)


class _LeaveUnchanged(Exception):
    """Raised inside an edit to discard the draft when the job is not in the expected state."""


def record_result(job: ProcessingJob, result: ProcessingResult, cpu_time: float = 0.0, memory_mb: float = 0.0) -> None:
    """Attach one item result to ``job`` and update progress and resource usage.

    A result that lands after the job went terminal is still kept. Its item was already
    counted as failed when the job was settled, so a successful late result moves one
    count from failed to processed.
    """
    if job.output is None:
        job.output = JobOutput()
    if result.item_id in job.result_ids():
        return
    job.output.results.append(result)

    usage = job.resource_usage
    usage.api_calls += result.api_calls
    usage.cpu_time += cpu_time
    usage.memory_peak = max(usage.memory_peak, memory_mb)
    job.retry_count += result.retries

    ok = result.status != ItemStatus.FAILED
    if job.is_terminal:
        if ok and job.progress.failed > 0:
            job.progress.failed -= 1
            job.progress.processed += 1
    elif ok:
        job.progress.processed += 1
    else:
        job.progress.failed += 1


def attach_summary(job: ProcessingJob) -> None:
    if job.output is None:
        job.output = JobOutput()
    results = job.output.results
    job.output.summary = build_summary(results, sum(r.processing_time_ms for r in results))


class WorkerPool(JobDispatcher):
    """Runs up to ``max_concurrent_jobs`` jobs concurrently on the event loop."""

    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        processor: ItemProcessor,
        get_config: Callable[[], QueueConfig],
        probe: Optional[ResourceProbe] = None,
        poll_interval: float = 1.0,
    ):
        self._store = store
        self._scheduler = scheduler
        self._processor = processor
        self._get_config = get_config
        self._probe = probe or StaticResourceProbe()
        self._poll_interval = poll_interval
        self._active: Dict[str, asyncio.Task] = {}
        self._worker_ids: Dict[str, str] = {}
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._dirty = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def running(self) -> bool:
        return self._running

    def notify(self) -> None:
        self._wakeup.set()

    async def start(self) -> None:
        await self._recover_orphans()
        self._running = True
        self._dirty = True
        self._task = asyncio.create_task(self._dispatch_loop())
        self._wakeup.set()
        logger.info("Worker pool started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Worker pool stopped (%d job(s) interrupted)", len(tasks))

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait until nothing is running and no pending job is ready to start."""

        async def _idle() -> None:
            while True:
                now = utcnow()
                ready = [
                    j for j in order_pending(self._store.snapshot(), self._get_config())
                    if j.scheduled_for is None or j.scheduled_for <= now
                ]
                if not self._active and not ready:
                    return
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_idle(), timeout=timeout)

    # -- dispatch -------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            self._wakeup.clear()
            try:
                await self._admit()
            except StorageError:
                logger.exception("Admission pass failed; retrying on next wakeup")

    def _claim_worker_id(self) -> str:
        used = set(self._worker_ids.values())
        n = 1
        while f"worker-{n}" in used:
            n += 1
        return f"worker-{n}"

    def _next_ready(self, config: QueueConfig) -> Optional[ProcessingJob]:
        now = utcnow()
        for job in order_pending(self._store.snapshot(), config):
            if job.id in self._active:
                continue
            if job.scheduled_for is None or job.scheduled_for <= now:
                return job
        return None

    async def _admit(self) -> None:
        config = self._get_config()
        admitted = False
        while len(self._active) < config.max_concurrent_jobs:
            candidate = self._next_ready(config)
            if candidate is None:
                break
            worker_id = self._claim_worker_id()
            try:
                async with self._store.edit(candidate.id, persist=False) as draft:
                    if draft.status != JobStatus.PENDING:
                        raise _LeaveUnchanged()
                    draft.status = JobStatus.PROCESSING
                    if draft.started_at is None:
                        draft.started_at = utcnow()
                    draft.worker_id = worker_id
                    draft.queue_position = None
                    draft.estimated_start_time = None
            except (_LeaveUnchanged, JobNotFoundError):
                continue
            self._worker_ids[candidate.id] = worker_id
            self._active[candidate.id] = asyncio.create_task(self._run(candidate.id, worker_id))
            self._dirty = True
            admitted = True
            logger.info("Admitted job %s on %s (priority %s)", candidate.id, worker_id, candidate.priority.value)

        if admitted:
            await self._store.flush()
        if self._dirty:
            self._dirty = False
            await self._scheduler.recompute(config)

    # -- execution ------------------------------------------------------------

    async def _run(self, job_id: str, worker_id: str) -> None:
        job = self._store.get(job_id)
        if job is None:
            self._release(job_id)
            return
        limits = self._get_config().processing_limits
        timeout = limits.single_job_timeout if job.type == JobType.SINGLE else limits.batch_job_timeout
        try:
            await asyncio.wait_for(self._process_items(job_id), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Job %s timed out after %gs on %s", job_id, timeout, worker_id)
            await self._close(job_id, JobStatus.FAILED, f"Job timed out after {timeout:g}s")
        except asyncio.CancelledError:
            await self._requeue(job_id)
            raise
        except Exception as e:
            logger.exception("Job %s failed on %s", job_id, worker_id)
            await self._close(job_id, JobStatus.FAILED, f"{type(e).__name__}: {str(e)}")
        finally:
            self._release(job_id)

    def _release(self, job_id: str) -> None:
        self._active.pop(job_id, None)
        self._worker_ids.pop(job_id, None)
        self._dirty = True
        self._wakeup.set()

    async def _process_items(self, job_id: str) -> None:
        job = self._store.get(job_id)
        if job is None:
            return
        done = job.result_ids()
        for item in job.input.items:
            if item.id in done:
                continue
            try:
                async with self._store.edit(job_id) as draft:
                    if draft.status != JobStatus.PROCESSING:
                        raise _LeaveUnchanged()
                    draft.progress.current_item = item.url
            except _LeaveUnchanged:
                logger.info("Job %s left the processing state; stopping at item boundary", job_id)
                await self._close(job_id)
                return

            limits = self._get_config().processing_limits
            cpu_before = self._probe.cpu_seconds()
            result = await self._processor.process(item, job.input.settings, limits, job.user_id)
            cpu_used = max(0.0, self._probe.cpu_seconds() - cpu_before)
            memory = self._probe.memory_mb()

            async with self._store.edit(job_id) as draft:
                record_result(draft, result, cpu_used, memory)

        await self._close(job_id, JobStatus.COMPLETED)

    async def _close(self, job_id: str, status: Optional[JobStatus] = None, error: Optional[str] = None) -> None:
        """Finish a run: move a still-processing job to ``status`` and summarise terminal jobs."""
        try:
            async with self._store.edit(job_id) as draft:
                if status is not None and draft.status == JobStatus.PROCESSING:
                    mark_terminal(draft, status, error)
                    draft.progress.current_item = None
                    logger.info("Job %s %s", job_id, status.value)
                if draft.is_terminal:
                    attach_summary(draft)
        except JobNotFoundError:
            logger.warning("Job %s disappeared before it could be closed", job_id)
        except StorageError:
            # The in-memory state is already updated; the next successful flush persists it.
            logger.exception("Could not persist the final state of job %s", job_id)

    async def _requeue(self, job_id: str) -> None:
        try:
            async with self._store.edit(job_id) as draft:
                if draft.status == JobStatus.PROCESSING:
                    draft.status = JobStatus.PENDING
                    draft.worker_id = None
                    draft.progress.current_item = None
        except JobNotFoundError:
            logger.debug("Job %s removed before it could be requeued", job_id)
        except StorageError:
            logger.exception("Could not persist requeue of job %s", job_id)

    async def _recover_orphans(self) -> None:
        for job in self._store.snapshot():
            if job.status == JobStatus.PROCESSING and job.id not in self._active:
                logger.warning("Returning orphaned job %s to pending", job.id)
                await self._requeue(job.id)
