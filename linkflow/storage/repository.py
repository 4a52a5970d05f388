"""Job repository interface and in-memory implementation.

The queue core needs little from durable storage: load everything at startup and
overwrite whole collections on save. Implementations are synchronous; the JobStore
calls them from a worker thread.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from linkflow.jobs.metrics import QueueMetrics
from linkflow.jobs.models import ProcessingFeedback, ProcessingJob
from linkflow.jobs.queue_config import QueueConfig


class JobRepository(ABC):
    """Abstract interface for job, config, metrics and feedback persistence."""

    name: str = "abstract"

    @abstractmethod
    def load_jobs(self) -> List[ProcessingJob]:
        ...

    @abstractmethod
    def save_jobs(self, jobs: List[ProcessingJob]) -> None:
        """Replace the stored job collection with ``jobs``."""
        ...

    @abstractmethod
    def load_config(self) -> Optional[QueueConfig]:
        ...

    @abstractmethod
    def save_config(self, config: QueueConfig) -> None:
        ...

    @abstractmethod
    def load_metrics(self) -> List[QueueMetrics]:
        ...

    @abstractmethod
    def save_metrics(self, history: List[QueueMetrics]) -> None:
        ...

    @abstractmethod
    def load_feedback(self) -> List[ProcessingFeedback]:
        ...

    @abstractmethod
    def save_feedback(self, feedback: List[ProcessingFeedback]) -> None:
        ...


class InMemoryRepository(JobRepository):
    """Keeps deep copies so callers can never mutate stored state by reference."""

    name = "memory"

    def __init__(self):
        self._jobs: List[ProcessingJob] = []
        self._config: Optional[QueueConfig] = None
        self._metrics: List[QueueMetrics] = []
        self._feedback: List[ProcessingFeedback] = []

    def load_jobs(self) -> List[ProcessingJob]:
        return [j.model_copy(deep=True) for j in self._jobs]

    def save_jobs(self, jobs: List[ProcessingJob]) -> None:
        self._jobs = [j.model_copy(deep=True) for j in jobs]

    def load_config(self) -> Optional[QueueConfig]:
        return self._config.model_copy(deep=True) if self._config else None

    def save_config(self, config: QueueConfig) -> None:
        self._config = config.model_copy(deep=True)

    def load_metrics(self) -> List[QueueMetrics]:
        return [m.model_copy(deep=True) for m in self._metrics]

    def save_metrics(self, history: List[QueueMetrics]) -> None:
        self._metrics = [m.model_copy(deep=True) for m in history]

    def load_feedback(self) -> List[ProcessingFeedback]:
        return [f.model_copy(deep=True) for f in self._feedback]

    def save_feedback(self, feedback: List[ProcessingFeedback]) -> None:
        self._feedback = [f.model_copy(deep=True) for f in feedback]
