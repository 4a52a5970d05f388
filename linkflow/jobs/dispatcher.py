"""Job dispatcher interface."""

from abc import ABC, abstractmethod


class JobDispatcher(ABC):
    """Abstract interface for running queued jobs (in-process or remote workers)."""

    @abstractmethod
    def notify(self) -> None:
        """Signal that the pending set or capacity may have changed."""
        ...

    @property
    @abstractmethod
    def active_count(self) -> int:
        """Number of jobs currently executing."""
        ...

    @property
    @abstractmethod
    def running(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start the admission loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
