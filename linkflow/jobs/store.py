"""Authoritative in-memory job collection with per-job locking.

Every mutation goes through ``edit``: the job's lock is taken, a deep copy is handed to
the caller, and the copy replaces the stored job only if the block exits cleanly. The
scheduler, the worker pool and lifecycle operations therefore never overwrite each
other's changes to the same job. Whole-collection reads (listing, metrics) are
snapshots of copies and are never written back.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from linkflow.jobs.errors import JobNotFoundError, StorageError
from linkflow.jobs.models import ProcessingJob, utcnow
from linkflow.storage.repository import JobRepository

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, repository: JobRepository):
        self._repository = repository
        self._jobs: Dict[str, ProcessingJob] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._save_lock = asyncio.Lock()

    @property
    def repository(self) -> JobRepository:
        return self._repository

    async def load(self) -> None:
        jobs = await asyncio.to_thread(self._repository.load_jobs)
        self._jobs = {job.id: job for job in jobs}
        logger.info("Loaded %d job(s) from %s repository", len(jobs), self._repository.name)

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def snapshot(self) -> List[ProcessingJob]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    def __len__(self) -> int:
        return len(self._jobs)

    async def add(self, job: ProcessingJob) -> None:
        async with self._locks[job.id]:
            self._jobs[job.id] = job.model_copy(deep=True)
        await self.flush()

    @asynccontextmanager
    async def edit(self, job_id: str, persist: bool = True) -> AsyncIterator[ProcessingJob]:
        """Read-modify-write one job under its lock.

        Raises JobNotFoundError if the job does not exist (or was removed while waiting
        for the lock). Exceptions raised inside the block discard the draft.
        """
        # Locks are only created for jobs that exist.
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)
        async with self._locks[job_id]:
            current = self._jobs.get(job_id)
            if current is None:
                self._locks.pop(job_id, None)
                raise JobNotFoundError(job_id)
            draft = current.model_copy(deep=True)
            yield draft
            draft.updated_at = utcnow()
            self._jobs[job_id] = draft
        if persist:
            await self.flush()

    async def remove(self, job_ids: Iterable[str]) -> int:
        removed = 0
        for job_id in list(job_ids):
            if job_id not in self._jobs:
                continue
            async with self._locks[job_id]:
                if self._jobs.pop(job_id, None) is not None:
                    removed += 1
            self._locks.pop(job_id, None)
        if removed:
            await self.flush()
        return removed

    async def flush(self) -> None:
        async with self._save_lock:
            jobs = self.snapshot()
            try:
                await asyncio.to_thread(self._repository.save_jobs, jobs)
            except StorageError:
                logger.exception("Failed to persist %d job(s)", len(jobs))
                raise
            except Exception as exc:
                logger.exception("Failed to persist %d job(s)", len(jobs))
                raise StorageError(f"Could not save jobs: {exc}") from exc
