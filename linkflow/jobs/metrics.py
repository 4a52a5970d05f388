"""Queue health snapshots, resource instrumentation and bounded metrics history."""

import asyncio
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from statistics import mean
from typing import Callable, Deque, Dict, Iterable, List, Optional

import psutil
from pydantic import BaseModel, Field

from linkflow.jobs.models import JobStatus, ProcessingJob, utcnow
from linkflow.jobs.queue_config import QueueConfig

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=24)
RECENT_HISTORY = 24
QUEUE_FULL_PENDING = 50
SLOW_PROCESSING_SECONDS = 60.0


class QueueStats(BaseModel):
    total_jobs: int = 0
    pending_jobs: int = 0
    processing_jobs: int = 0
    paused_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0


class PriorityDistribution(BaseModel):
    urgent: int = 0
    high: int = 0
    normal: int = 0
    low: int = 0


class PerformanceMetrics(BaseModel):
    # Seconds
    average_processing_time: float = 0.0
    average_queue_wait_time: float = 0.0
    throughput_per_hour: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0


class ResourceSnapshot(BaseModel):
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    api_calls_per_minute: int = 0
    active_workers: int = 0


class Bottlenecks(BaseModel):
    queue_full: bool = False
    slow_processing: bool = False
    high_cpu_usage: bool = False
    high_memory_usage: bool = False
    api_rate_limited: bool = False


class QueueMetrics(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    queue_stats: QueueStats = Field(default_factory=QueueStats)
    priority_distribution: PriorityDistribution = Field(default_factory=PriorityDistribution)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    resource_usage: ResourceSnapshot = Field(default_factory=ResourceSnapshot)
    bottlenecks: Bottlenecks = Field(default_factory=Bottlenecks)


# ---------------------------------------------------------------------------
# Instrumentation
# ---------------------------------------------------------------------------

class ApiCallCounter:
    """Counts collaborator calls over a rolling 60 second window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._calls: Deque[float] = deque()

    def record(self, n: int = 1) -> None:
        now = self._clock()
        for _ in range(n):
            self._calls.append(now)

    def per_minute(self) -> int:
        cutoff = self._clock() - 60.0
        while self._calls and self._calls[0] < cutoff:
            self._calls.popleft()
        return len(self._calls)


class ResourceProbe(ABC):
    @abstractmethod
    def cpu_percent(self) -> float:
        ...

    @abstractmethod
    def memory_mb(self) -> float:
        ...

    @abstractmethod
    def cpu_seconds(self) -> float:
        """Cumulative CPU time consumed by this process."""
        ...

    @abstractmethod
    def api_calls_per_minute(self) -> int:
        ...


class PsutilResourceProbe(ResourceProbe):
    def __init__(self, api_counter: Optional[ApiCallCounter] = None):
        self._process = psutil.Process(os.getpid())
        self.api_counter = api_counter or ApiCallCounter()
        # First call primes psutil's interval-less measurement and always returns 0.
        self._process.cpu_percent(interval=None)

    def cpu_percent(self) -> float:
        return float(self._process.cpu_percent(interval=None))

    def memory_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    def cpu_seconds(self) -> float:
        times = self._process.cpu_times()
        return float(times.user + times.system)

    def api_calls_per_minute(self) -> int:
        return self.api_counter.per_minute()


class StaticResourceProbe(ResourceProbe):
    """Fixed readings; useful wherever real process figures would be noise."""

    def __init__(self, cpu: float = 0.0, memory: float = 0.0, api_calls: int = 0, cpu_seconds: float = 0.0):
        self.cpu = cpu
        self.memory = memory
        self.api_calls = api_calls
        self.cpu_total = cpu_seconds

    def cpu_percent(self) -> float:
        return self.cpu

    def memory_mb(self) -> float:
        return self.memory

    def cpu_seconds(self) -> float:
        return self.cpu_total

    def api_calls_per_minute(self) -> int:
        return self.api_calls


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

def _seconds(later: Optional[datetime], earlier: Optional[datetime]) -> Optional[float]:
    if later is None or earlier is None:
        return None
    return max(0.0, (later - earlier).total_seconds())


def build_snapshot(
    jobs: Iterable[ProcessingJob],
    config: QueueConfig,
    probe: ResourceProbe,
    active_workers: int = 0,
    now: Optional[datetime] = None,
) -> QueueMetrics:
    """Point-in-time queue metrics.

    Status and priority counts cover every job. Performance figures only cover jobs
    created in the trailing 24 hours: averages are over completed jobs, and success and
    error rates are percentages of all jobs in that window (0 when it is empty).
    """
    now = now or utcnow()
    jobs = list(jobs)
    counts: Dict[JobStatus, int] = {status: 0 for status in JobStatus}
    for job in jobs:
        counts[job.status] += 1

    stats = QueueStats(
        total_jobs=len(jobs),
        pending_jobs=counts[JobStatus.PENDING],
        processing_jobs=counts[JobStatus.PROCESSING],
        paused_jobs=counts[JobStatus.PAUSED],
        completed_jobs=counts[JobStatus.COMPLETED],
        failed_jobs=counts[JobStatus.FAILED],
        cancelled_jobs=counts[JobStatus.CANCELLED],
    )

    priorities = PriorityDistribution()
    for job in jobs:
        setattr(priorities, job.priority.value, getattr(priorities, job.priority.value) + 1)

    window = [j for j in jobs if j.created_at >= now - WINDOW]
    completed = [j for j in window if j.status == JobStatus.COMPLETED]
    failed = [j for j in window if j.status == JobStatus.FAILED]
    processing_times = [t for t in (_seconds(j.completed_at, j.started_at) for j in completed) if t is not None]
    wait_times = [t for t in (_seconds(j.started_at, j.created_at) for j in completed) if t is not None]

    performance = PerformanceMetrics(
        average_processing_time=mean(processing_times) if processing_times else 0.0,
        average_queue_wait_time=mean(wait_times) if wait_times else 0.0,
        throughput_per_hour=len(completed) / 24,
        success_rate=100.0 * len(completed) / len(window) if window else 0.0,
        error_rate=100.0 * len(failed) / len(window) if window else 0.0,
    )

    resources = ResourceSnapshot(
        cpu_usage=probe.cpu_percent(),
        memory_usage=probe.memory_mb(),
        api_calls_per_minute=probe.api_calls_per_minute(),
        active_workers=active_workers,
    )

    caps = config.resource_allocation
    bottlenecks = Bottlenecks(
        queue_full=stats.pending_jobs > QUEUE_FULL_PENDING,
        slow_processing=performance.average_processing_time > SLOW_PROCESSING_SECONDS,
        high_cpu_usage=resources.cpu_usage > caps.cpu_limit_percent,
        high_memory_usage=resources.memory_usage > caps.memory_limit_mb,
        api_rate_limited=resources.api_calls_per_minute >= caps.api_rate_limit_per_minute,
    )

    return QueueMetrics(
        timestamp=now,
        queue_stats=stats,
        priority_distribution=priorities,
        performance_metrics=performance,
        resource_usage=resources,
        bottlenecks=bottlenecks,
    )


class MetricsAggregator:
    """Builds snapshots and keeps a bounded history in the repository."""

    def __init__(self, repository, probe: ResourceProbe):
        self._repository = repository
        self.probe = probe
        self._history: List[QueueMetrics] = []
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        self._history = await asyncio.to_thread(self._repository.load_metrics)
        self._history.sort(key=lambda m: m.timestamp)

    @property
    def history(self) -> List[QueueMetrics]:
        return list(self._history)

    async def record(
        self,
        jobs: Iterable[ProcessingJob],
        config: QueueConfig,
        active_workers: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, object]:
        snapshot = build_snapshot(jobs, config, self.probe, active_workers, now)
        async with self._lock:
            history = self._history + [snapshot]
            cap = config.maintenance.max_metrics_history
            if len(history) > cap:
                history = history[-cap:]
            await asyncio.to_thread(self._repository.save_metrics, history)
            self._history = history
        if any(snapshot.bottlenecks.model_dump().values()):
            flags = [name for name, on in snapshot.bottlenecks.model_dump().items() if on]
            logger.warning("Queue bottlenecks detected: %s", ", ".join(flags))
        return {
            "current": snapshot,
            "history": history[-RECENT_HISTORY:],
        }
