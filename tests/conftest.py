import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pytest

from linkflow.jobs.metrics import StaticResourceProbe
from linkflow.jobs.models import (
    AIAnalysis,
    CategoryGuess,
    ContentTypeGuess,
    ExtractedContent,
    JobInput,
    JobPriority,
    JobStatus,
    JobType,
    LanguageGuess,
    ProcessingItem,
    ProcessingJob,
    QualityScore,
    SummaryBlock,
    TagGuess,
)
from linkflow.jobs.service import QueueService
from linkflow.processing.analyzer import AnalysisError, ContentAnalyzer
from linkflow.processing.duplicates import ExistingLink, InMemoryLinkIndex
from linkflow.processing.extractor import ContentExtractor
from linkflow.storage.repository import InMemoryRepository

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class StubExtractor(ContentExtractor):
    """Returns canned pages. URLs can be made to raise, report an error, or block on a gate."""

    def __init__(
        self,
        pages: Optional[Dict[str, ExtractedContent]] = None,
        raise_urls: Iterable[str] = (),
        error_urls: Iterable[str] = (),
        delay: float = 0.0,
    ):
        self.pages = pages or {}
        self.raise_urls = set(raise_urls)
        self.error_urls = set(error_urls)
        self.delay = delay
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.entered: Dict[str, asyncio.Event] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def gate(self, url: str) -> asyncio.Event:
        """Block extraction of ``url`` until the returned event is set."""
        self.gates[url] = asyncio.Event()
        self.entered[url] = asyncio.Event()
        return self.gates[url]

    async def extract_content(self, url: str) -> ExtractedContent:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if url in self.gates:
                self.entered[url].set()
                await self.gates[url].wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if url in self.raise_urls:
                raise RuntimeError("connection reset by peer")
            if url in self.error_urls:
                return ExtractedContent(error="HTTP 404")
            if url in self.pages:
                return self.pages[url]
            return ExtractedContent(
                title=f"Page at {url}",
                description="A page",
                text_content="Some readable words about python packaging",
                word_count=6,
                reading_time=1,
            )
        finally:
            self.in_flight -= 1


def sample_analysis() -> AIAnalysis:
    return AIAnalysis(
        category=CategoryGuess(name="Technology", confidence=0.9),
        tags=[
            TagGuess(name="python", confidence=0.95),
            TagGuess(name="packaging", confidence=0.8),
            TagGuess(name="maybe", confidence=0.3),
        ],
        summary=SummaryBlock(text="A page about python packaging.", confidence=0.8),
        language=LanguageGuess(detected="en", confidence=0.99),
        quality_score=QualityScore(score=85),
        content_type=ContentTypeGuess(type="article", confidence=0.7),
    )


class StubAnalyzer(ContentAnalyzer):
    def __init__(self, analysis: Any = None, fail: bool = False):
        self.analysis = analysis if analysis is not None else sample_analysis()
        self.fail = fail
        self.calls = 0

    async def analyze_content(self, content, settings):
        self.calls += 1
        if self.fail:
            raise AnalysisError("model overloaded")
        return self.analysis


async def no_sleep(seconds: float) -> None:
    return None


def build_job(
    user_id: str = "user-1",
    priority: JobPriority = JobPriority.NORMAL,
    status: JobStatus = JobStatus.PENDING,
    created_at: Optional[datetime] = None,
    items: int = 1,
    processed: int = 0,
) -> ProcessingJob:
    job = ProcessingJob(
        user_id=user_id,
        type=JobType.SINGLE if items == 1 else JobType.BATCH,
        priority=priority,
        status=status,
        created_at=created_at or NOW,
        input=JobInput(items=[ProcessingItem(url=f"https://example.com/{n}") for n in range(items)]),
    )
    job.progress.total = items
    job.progress.processed = processed
    return job


@pytest.fixture
def extractor() -> StubExtractor:
    return StubExtractor()


@pytest.fixture
def analyzer() -> StubAnalyzer:
    return StubAnalyzer()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def make_service(repository, extractor, analyzer):
    """Factory for a QueueService wired to stub collaborators; call ``start`` in the test."""

    def _make(links: Iterable[ExistingLink] = (), **overrides) -> QueueService:
        kwargs = dict(
            repository=repository,
            extractor=extractor,
            analyzer=analyzer,
            link_index=InMemoryLinkIndex(links),
            probe=StaticResourceProbe(cpu=12.5, memory=256.0, api_calls=3),
            poll_interval=0.01,
            sleep=no_sleep,
        )
        kwargs.update(overrides)
        return QueueService(**kwargs)

    return _make


def later(seconds: float) -> datetime:
    return NOW + timedelta(seconds=seconds)
