"""Job summary built from the results of individual items."""

from collections import Counter
from typing import Iterable

from linkflow.jobs.models import (
    DuplicateStatus,
    ItemStatus,
    ProcessingResult,
    ProcessingSummary,
    QualityDistribution,
)

HIGH_QUALITY = 80
MEDIUM_QUALITY = 50


def build_summary(results: Iterable[ProcessingResult], processing_time_ms: float) -> ProcessingSummary:
    """Aggregate per-item results into job-level counts."""
    results = list(results)
    categories: Counter = Counter()
    tags: Counter = Counter()
    languages: Counter = Counter()
    content_types: Counter = Counter()
    quality = QualityDistribution()
    duplicates = 0

    for result in results:
        analysis = result.ai_analysis
        if analysis is not None:
            if analysis.category:
                categories[analysis.category.name] += 1
            for tag in analysis.tags:
                tags[tag.name] += 1
            if analysis.language:
                languages[analysis.language.detected] += 1
            if analysis.content_type:
                content_types[analysis.content_type.type] += 1
            if analysis.quality_score:
                score = analysis.quality_score.score
                if score >= HIGH_QUALITY:
                    quality.high += 1
                elif score >= MEDIUM_QUALITY:
                    quality.medium += 1
                else:
                    quality.low += 1
        if result.duplicate_check and result.duplicate_check.status == DuplicateStatus.DUPLICATE:
            duplicates += 1

    return ProcessingSummary(
        total_items=len(results),
        successful=sum(1 for r in results if r.status == ItemStatus.SUCCESS),
        failed=sum(1 for r in results if r.status == ItemStatus.FAILED),
        skipped=sum(1 for r in results if r.status == ItemStatus.SKIPPED),
        processing_time_ms=processing_time_ms,
        categories_found=dict(categories),
        tags_generated=dict(tags),
        languages_detected=dict(languages),
        quality_distribution=quality,
        duplicates_found=duplicates,
        content_types=dict(content_types),
    )
