import asyncio
from datetime import timedelta

import pytest

from conftest import StubAnalyzer, StubExtractor, build_job, no_sleep
from linkflow.jobs.errors import StorageError
from linkflow.jobs.lifecycle import QueueOperation
from linkflow.jobs.metrics import StaticResourceProbe
from linkflow.jobs.models import ItemStatus, JobPriority, JobStatus, ProcessingResult
from linkflow.jobs.queue_config import QueueConfig
from linkflow.jobs.scheduler import Scheduler
from linkflow.jobs.store import JobStore
from linkflow.jobs.worker_pool import WorkerPool, record_result
from linkflow.processing.duplicates import InMemoryLinkIndex
from linkflow.processing.item_processor import ItemProcessor
from linkflow.storage.repository import InMemoryRepository

FAST = {"processing_limits": {"retry_attempts": 0, "retry_delay": 0}}


def urls(*paths):
    return [{"url": f"https://example.com/{p}"} for p in paths]


async def wait_for(predicate, timeout: float = 5.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_batch_job_runs_to_completion(make_service) -> None:
    service = make_service()
    await service.start()
    try:
        await service.update_config(FAST)
        job = await service.submit("user-1", urls("a", "b"))
        await service.pool.drain()
    finally:
        await service.stop()

    done = service.get_status("user-1", job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.started_at is not None
    assert done.completed_at is not None
    assert done.worker_id == "worker-1"
    assert done.queue_position is None
    assert done.progress.processed == 2
    assert done.progress.failed == 0
    assert done.progress.current_item is None
    assert done.resource_usage.api_calls == 6
    assert done.resource_usage.memory_peak == 256.0

    output = service.get_results("user-1", job.id)
    assert len(output.results) == 2
    assert output.summary.total_items == 2
    assert output.summary.successful == 2
    assert output.summary.categories_found == {"Technology": 2}
    assert output.summary.quality_distribution.high == 2


@pytest.mark.asyncio
async def test_admission_never_exceeds_max_concurrent_jobs(make_service) -> None:
    extractor = StubExtractor(delay=0.05)
    service = make_service(extractor=extractor)
    await service.start()
    try:
        await service.update_config({**FAST, "max_concurrent_jobs": 2})
        for n in range(5):
            await service.submit("user-1", urls(n))
        await wait_for(lambda: service.pool.active_count > 0)
        processing = [j for j in service.store.snapshot() if j.status == JobStatus.PROCESSING]
        assert len(processing) <= 2
        await service.pool.drain()
    finally:
        await service.stop()

    assert extractor.max_in_flight == 2
    assert all(j.status == JobStatus.COMPLETED for j in service.store.snapshot())


@pytest.mark.asyncio
async def test_higher_priority_job_is_admitted_first(make_service) -> None:
    extractor = StubExtractor()
    gate = extractor.gate("https://example.com/blocker")
    service = make_service(extractor=extractor)
    await service.start()
    try:
        await service.update_config({**FAST, "max_concurrent_jobs": 1})
        await service.submit("user-1", urls("blocker"))
        await asyncio.wait_for(extractor.entered["https://example.com/blocker"].wait(), 5)
        low = await service.submit("user-1", urls("low"), priority="low")
        urgent = await service.submit("user-1", urls("urgent"), priority="urgent")
        assert service.get_status("user-1", urgent.id).queue_position == 1
        assert service.get_status("user-1", low.id).queue_position == 2
        gate.set()
        await service.pool.drain()
    finally:
        await service.stop()

    assert extractor.calls.index("https://example.com/urgent") < extractor.calls.index("https://example.com/low")


@pytest.mark.asyncio
async def test_cancel_mid_run_keeps_partial_results(make_service) -> None:
    extractor = StubExtractor()
    gate = extractor.gate("https://example.com/first")
    service = make_service(extractor=extractor)
    await service.start()
    try:
        await service.update_config(FAST)
        job = await service.submit("user-1", urls("first", "second", "third"))
        await asyncio.wait_for(extractor.entered["https://example.com/first"].wait(), 5)

        cancelled = await service.cancel("user-1", job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.completed_at is not None

        gate.set()
        await service.pool.drain()
    finally:
        await service.stop()

    final = service.get_status("user-1", job.id)
    assert final.status == JobStatus.CANCELLED
    assert len(final.output.results) == 1
    assert final.output.summary.total_items == 1
    assert final.progress.processed == 1
    assert final.progress.failed == 2
    assert "https://example.com/second" not in extractor.calls


@pytest.mark.asyncio
async def test_job_timeout_fails_the_job(make_service) -> None:
    extractor = StubExtractor(delay=3)
    service = make_service(extractor=extractor)
    await service.start()
    try:
        await service.update_config({
            "processing_limits": {"single_job_timeout": 1, "retry_attempts": 0, "stage_timeout": 10},
        })
        job = await service.submit("user-1", urls("slow"))
        await service.pool.drain(timeout=5)
    finally:
        await service.stop()

    failed = service.get_status("user-1", job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.last_error == "Job timed out after 1s"
    assert failed.completed_at is not None
    assert failed.progress.failed == 1
    assert service.pool.active_count == 0


@pytest.mark.asyncio
async def test_pause_then_resume_continues_where_it_stopped(make_service) -> None:
    extractor = StubExtractor()
    gate = extractor.gate("https://example.com/one")
    service = make_service(extractor=extractor)
    await service.start()
    try:
        await service.update_config(FAST)
        job = await service.submit("user-1", urls("one", "two", "three"))
        await asyncio.wait_for(extractor.entered["https://example.com/one"].wait(), 5)

        outcome = await service.manage("user-1", QueueOperation.PAUSE, [job.id])
        assert outcome.affected_job_ids == [job.id]
        gate.set()
        await wait_for(lambda: service.pool.active_count == 0)

        paused = service.get_status("user-1", job.id)
        assert paused.status == JobStatus.PAUSED
        assert len(paused.output.results) == 1
        assert paused.queue_position is None

        await service.manage("user-1", QueueOperation.RESUME, [job.id])
        await service.pool.drain()
    finally:
        await service.stop()

    done = service.get_status("user-1", job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.progress.processed == 3
    assert sorted(extractor.calls) == sorted(f"https://example.com/{p}" for p in ("one", "two", "three"))


@pytest.mark.asyncio
async def test_deferred_job_waits_for_its_scheduled_time(make_service) -> None:
    extractor = StubExtractor()
    gate = extractor.gate("https://example.com/blocker")
    service = make_service(extractor=extractor)
    await service.start()
    try:
        await service.update_config({**FAST, "max_concurrent_jobs": 1})
        await service.submit("user-1", urls("blocker"))
        await asyncio.wait_for(extractor.entered["https://example.com/blocker"].wait(), 5)
        deferred = await service.submit("user-1", urls("later"))
        start_at = service.get_status("user-1", deferred.id).estimated_start_time + timedelta(days=1)
        await service.manage("user-1", QueueOperation.RESCHEDULE, [deferred.id], scheduled_time=start_at)
        gate.set()
        await service.pool.drain()
    finally:
        await service.stop()

    job = service.get_status("user-1", deferred.id)
    assert job.status == JobStatus.PENDING
    assert job.scheduled_for == start_at
    assert job.estimated_start_time == start_at
    assert "https://example.com/later" not in extractor.calls


@pytest.mark.asyncio
async def test_orphaned_processing_jobs_are_recovered_on_start(make_service, repository) -> None:
    orphan = build_job(status=JobStatus.PROCESSING)
    orphan.worker_id = "worker-3"
    repository.save_jobs([orphan])
    service = make_service()
    await service.start()
    try:
        await service.update_config(FAST)
        await service.pool.drain()
    finally:
        await service.stop()

    recovered = service.get_status("user-1", orphan.id)
    assert recovered.status == JobStatus.COMPLETED
    assert recovered.worker_id == "worker-1"


@pytest.mark.asyncio
async def test_stop_returns_running_jobs_to_pending(make_service) -> None:
    extractor = StubExtractor()
    extractor.gate("https://example.com/stuck")
    service = make_service(extractor=extractor)
    await service.start()
    await service.update_config(FAST)
    job = await service.submit("user-1", urls("stuck"), priority=JobPriority.HIGH)
    await asyncio.wait_for(extractor.entered["https://example.com/stuck"].wait(), 5)

    await service.stop()

    interrupted = service.get_status("user-1", job.id)
    assert interrupted.status == JobStatus.PENDING
    assert interrupted.worker_id is None
    assert service.pool.active_count == 0


class FlakyProbe(StaticResourceProbe):
    """Fails the first CPU reading, then behaves."""

    def __init__(self):
        super().__init__(memory=64.0)
        self.failures = 1

    def cpu_seconds(self) -> float:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("sensor offline")
        return super().cpu_seconds()


@pytest.mark.asyncio
async def test_unexpected_error_fails_job_and_pool_moves_on(make_service) -> None:
    service = make_service(probe=FlakyProbe())
    await service.start()
    try:
        await service.update_config({**FAST, "max_concurrent_jobs": 1})
        broken = await service.submit("user-1", urls("a", "b"), priority=JobPriority.HIGH)
        healthy = await service.submit("user-1", urls("c"))
        await service.pool.drain()
    finally:
        await service.stop()

    failed = service.get_status("user-1", broken.id)
    assert failed.status == JobStatus.FAILED
    assert failed.last_error == "RuntimeError: sensor offline"
    assert failed.completed_at is not None
    assert failed.progress.processed + failed.progress.failed == 2
    assert failed.output.summary.total_items == 0

    assert service.get_status("user-1", healthy.id).status == JobStatus.COMPLETED
    assert service.pool.active_count == 0


class FailingRepository(InMemoryRepository):
    def __init__(self):
        super().__init__()
        self.broken = False

    def save_jobs(self, jobs) -> None:
        if self.broken:
            raise StorageError("disk full")
        super().save_jobs(jobs)


@pytest.mark.asyncio
async def test_storage_failure_while_closing_stays_inside_the_run() -> None:
    repository = FailingRepository()
    store = JobStore(repository)
    processor = ItemProcessor(StubExtractor(), StubAnalyzer(), InMemoryLinkIndex(), sleep=no_sleep)
    pool = WorkerPool(store, Scheduler(store), processor, lambda: QueueConfig(), StaticResourceProbe())
    job = build_job(status=JobStatus.PROCESSING)
    job.worker_id = "worker-9"
    await store.add(job)
    repository.broken = True

    await pool._run(job.id, "worker-9")

    failed = store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.last_error == "StorageError: disk full"
    assert failed.progress.failed == 1
    assert pool.active_count == 0


@pytest.mark.asyncio
async def test_storage_failure_while_requeueing_is_logged_not_raised() -> None:
    repository = FailingRepository()
    store = JobStore(repository)
    processor = ItemProcessor(StubExtractor(), StubAnalyzer(), InMemoryLinkIndex(), sleep=no_sleep)
    pool = WorkerPool(store, Scheduler(store), processor, lambda: QueueConfig(), StaticResourceProbe())
    job = build_job(status=JobStatus.PROCESSING)
    await store.add(job)
    repository.broken = True

    await pool._requeue(job.id)

    assert store.get(job.id).status == JobStatus.PENDING


def test_late_result_after_cancel_moves_count_to_processed() -> None:
    job = build_job(status=JobStatus.CANCELLED, items=3)
    job.progress.failed = 3

    record_result(job, ProcessingResult(item_id=job.input.items[0].id, original_url="https://example.com/0"))
    record_result(job, ProcessingResult(
        item_id=job.input.items[1].id, original_url="https://example.com/1", status=ItemStatus.FAILED
    ))

    assert job.progress.processed == 1
    assert job.progress.failed == 2
    assert len(job.output.results) == 2
