"""Per-item enrichment pipeline: extraction, AI analysis, duplicate check.

Each stage is optional per ProcessingSettings and fault tolerant on its own: a stage
that keeps failing after its retries degrades to a fallback plus a warning. An item is
only ``failed`` when something outside the guarded stages raises.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from linkflow.jobs.metrics import ApiCallCounter
from linkflow.jobs.models import (
    DuplicateCheck,
    DuplicateStatus,
    ExtractedContent,
    ItemStatus,
    ProcessingItem,
    ProcessingResult,
    ProcessingSettings,
)
from linkflow.jobs.queue_config import ProcessingLimits
from linkflow.processing.analyzer import AnalysisInput, ContentAnalyzer, apply_settings, fallback_analysis
from linkflow.processing.duplicates import LinkIndex
from linkflow.processing.extractor import ContentExtractor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageFailedError(Exception):
    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage} failed: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.cause = cause


class ExtractionError(Exception):
    pass


@dataclass
class _Tally:
    retries: int = 0
    api_calls: int = 0


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return str(exc) or type(exc).__name__


class ItemProcessor:
    def __init__(
        self,
        extractor: ContentExtractor,
        analyzer: Optional[ContentAnalyzer],
        link_index: LinkIndex,
        api_counter: Optional[ApiCallCounter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._extractor = extractor
        self._analyzer = analyzer
        self._link_index = link_index
        self._api_counter = api_counter
        self._sleep = sleep

    async def _run_stage(
        self,
        stage: str,
        call: Callable[[], Awaitable[T]],
        limits: ProcessingLimits,
        tally: _Tally,
    ) -> T:
        """Attempt ``call`` up to 1 + retry_attempts times with exponential backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(1 + limits.retry_attempts):
            if attempt:
                tally.retries += 1
                await self._sleep(limits.retry_delay * (2 ** (attempt - 1)))
            tally.api_calls += 1
            if self._api_counter is not None:
                self._api_counter.record()
            try:
                return await asyncio.wait_for(call(), timeout=limits.stage_timeout)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "%s attempt %d/%d failed: %s",
                    stage, attempt + 1, 1 + limits.retry_attempts, _describe(exc),
                )
        raise StageFailedError(stage, last_error)

    async def _extract(self, url: str) -> ExtractedContent:
        content = await self._extractor.extract_content(url)
        if content.error:
            raise ExtractionError(content.error)
        return content

    async def process(
        self,
        item: ProcessingItem,
        settings: ProcessingSettings,
        limits: ProcessingLimits,
        user_id: str,
    ) -> ProcessingResult:
        started = time.perf_counter()
        tally = _Tally()
        result = ProcessingResult(item_id=item.id, original_url=item.url)
        try:
            if not settings.any_stage_enabled():
                result.status = ItemStatus.SKIPPED
                result.warnings.append("All processing steps are disabled")
                return result

            content = ExtractedContent(
                title=item.title or "",
                description=item.description or "",
                text_content=item.content or "",
            )

            if settings.extract_content:
                try:
                    extracted = await self._run_stage("Content extraction", lambda: self._extract(item.url), limits, tally)
                    content = extracted.model_copy(update={
                        "title": extracted.title or content.title,
                        "description": extracted.description or content.description,
                        "text_content": extracted.text_content or content.text_content,
                    })
                except StageFailedError as exc:
                    result.warnings.append(f"Content extraction failed: {_describe(exc.cause)}")
                result.extracted_content = content

            if settings.analysis_enabled():
                request = AnalysisInput(
                    url=item.url,
                    title=content.title,
                    description=content.description,
                    text_content=content.text_content,
                )
                if self._analyzer is None:
                    result.warnings.append("AI analysis is not configured; using fallback")
                    analysis = fallback_analysis(item)
                elif request.is_empty():
                    result.warnings.append("No content available for AI analysis; using fallback")
                    analysis = fallback_analysis(item)
                else:
                    try:
                        analysis = await self._run_stage(
                            "AI analysis", lambda: self._analyzer.analyze_content(request, settings), limits, tally
                        )
                    except StageFailedError as exc:
                        result.warnings.append(f"AI analysis failed: {_describe(exc.cause)}; using fallback")
                        analysis = fallback_analysis(item)
                result.ai_analysis = apply_settings(analysis, settings)

            if settings.duplicate_detection:
                title = content.title or item.title
                try:
                    check = await self._run_stage(
                        "Duplicate check", lambda: self._link_index.find_similar(user_id, item.url, title), limits, tally
                    )
                except StageFailedError as exc:
                    result.warnings.append(f"Duplicate check failed: {_describe(exc.cause)}")
                    check = DuplicateCheck()
                result.duplicate_check = check
                if settings.skip_duplicates and check.status == DuplicateStatus.DUPLICATE:
                    result.status = ItemStatus.SKIPPED
                    result.warnings.append(f"Skipped as duplicate of link {check.matches[0].link_id}")
        except Exception as exc:
            logger.exception("Unrecoverable error processing %s", item.url)
            result.status = ItemStatus.FAILED
            result.error = f"{type(exc).__name__}: {exc}"
        finally:
            result.processing_time_ms = (time.perf_counter() - started) * 1000
            result.retries = tally.retries
            result.api_calls = tally.api_calls
        return result
