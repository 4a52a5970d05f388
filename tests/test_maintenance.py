from datetime import timedelta

import pytest

from conftest import NOW, build_job
from linkflow.jobs.errors import InvalidRequestError
from linkflow.jobs.maintenance import MaintenanceSweeper
from linkflow.jobs.models import JobStatus
from linkflow.jobs.queue_config import QueueConfig
from linkflow.jobs.store import JobStore
from linkflow.storage.repository import InMemoryRepository


def aged(status, days):
    job = build_job(status=status, created_at=NOW - timedelta(days=days + 1))
    job.completed_at = NOW - timedelta(days=days)
    return job


async def populated():
    store = JobStore(InMemoryRepository())
    jobs = {
        "old_completed": aged(JobStatus.COMPLETED, 10),
        "new_completed": aged(JobStatus.COMPLETED, 1),
        "old_failed": aged(JobStatus.FAILED, 40),
        "new_failed": aged(JobStatus.FAILED, 10),
        "old_cancelled": aged(JobStatus.CANCELLED, 7),
        "pending": build_job(created_at=NOW - timedelta(days=100)),
    }
    for job in jobs.values():
        await store.add(job)
    return store, jobs


@pytest.mark.asyncio
async def test_all_uses_per_status_retention() -> None:
    store, jobs = await populated()

    counts = await MaintenanceSweeper(store).sweep("all", QueueConfig(), now=NOW)

    assert counts == {"removed": 3, "remaining": 3}
    remaining = {j.id for j in store.snapshot()}
    assert remaining == {jobs["new_completed"].id, jobs["new_failed"].id, jobs["pending"].id}


@pytest.mark.asyncio
async def test_explicit_age_overrides_retention() -> None:
    store, jobs = await populated()

    counts = await MaintenanceSweeper(store).sweep("failed", QueueConfig(), older_than_days=5, now=NOW)

    assert counts["removed"] == 2
    assert store.get(jobs["old_completed"].id) is not None


@pytest.mark.asyncio
async def test_never_touches_non_terminal_jobs() -> None:
    store, jobs = await populated()

    await MaintenanceSweeper(store).sweep("all", QueueConfig(), older_than_days=0, now=NOW)

    assert [j.id for j in store.snapshot()] == [jobs["pending"].id]


@pytest.mark.asyncio
async def test_rejects_bad_arguments() -> None:
    store, _ = await populated()
    sweeper = MaintenanceSweeper(store)

    with pytest.raises(InvalidRequestError):
        await sweeper.sweep("pending", QueueConfig(), now=NOW)
    with pytest.raises(InvalidRequestError):
        await sweeper.sweep("all", QueueConfig(), older_than_days=-1, now=NOW)
    assert len(store) == 6
