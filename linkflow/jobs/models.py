"""Job record data model for queued link processing."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class JobType(str, Enum):
    SINGLE = "single"
    BATCH = "batch"


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class DuplicateStatus(str, Enum):
    UNIQUE = "unique"
    SIMILAR = "similar"
    DUPLICATE = "duplicate"


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

class ProcessingItem(BaseModel):
    """One link to enrich. Caller-supplied fields are fallbacks for skipped or failed steps."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    existing_tags: List[str] = Field(default_factory=list)
    existing_category: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = (value or "").strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


class CustomPrompts(BaseModel):
    categorization: Optional[str] = None
    tagging: Optional[str] = None
    summary: Optional[str] = None


class ProcessingSettings(BaseModel):
    auto_categorize: bool = True
    auto_tag: bool = True
    extract_content: bool = True
    generate_summary: bool = True
    detect_language: bool = True
    quality_score: bool = True
    duplicate_detection: bool = True
    sentiment_analysis: bool = False
    keyword_extraction: bool = True
    content_enhancement: bool = False
    skip_duplicates: bool = False
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_tags: int = Field(default=8, ge=0, le=50)
    max_summary_length: int = Field(default=300, ge=10, le=5000)
    language_preference: str = "en"
    custom_prompts: CustomPrompts = Field(default_factory=CustomPrompts)

    model_config = {"extra": "forbid"}

    def analysis_enabled(self) -> bool:
        return any((
            self.auto_categorize,
            self.auto_tag,
            self.generate_summary,
            self.detect_language,
            self.quality_score,
            self.sentiment_analysis,
            self.keyword_extraction,
        ))

    def any_stage_enabled(self) -> bool:
        return self.extract_content or self.duplicate_detection or self.analysis_enabled()


# ---------------------------------------------------------------------------
# Per-item output
# ---------------------------------------------------------------------------

class ExtractedContent(BaseModel):
    title: str = ""
    description: str = ""
    text_content: str = ""
    meta_description: str = ""
    author: str = ""
    publish_date: str = ""
    word_count: int = 0
    reading_time: int = 0
    error: Optional[str] = None


class CategoryGuess(BaseModel):
    name: str
    confidence: float = 0.0
    reasoning: str = ""


class TagGuess(BaseModel):
    name: str
    confidence: float = 0.0
    reasoning: str = ""


class SummaryBlock(BaseModel):
    text: str = ""
    key_points: List[str] = Field(default_factory=list)
    confidence: float = 0.0


class LanguageGuess(BaseModel):
    detected: str = "en"
    confidence: float = 0.0


class QualityFactors(BaseModel):
    content_depth: float = 0.5
    readability: float = 0.5
    authority: float = 0.5
    freshness: float = 0.5


class QualityScore(BaseModel):
    score: float = 50.0
    factors: QualityFactors = Field(default_factory=QualityFactors)
    reasoning: str = ""


class Sentiment(BaseModel):
    score: float = 0.0
    label: str = "neutral"
    confidence: float = 0.0


class Keywords(BaseModel):
    primary: List[str] = Field(default_factory=list)
    secondary: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)


class ContentTypeGuess(BaseModel):
    type: str = "other"
    confidence: float = 0.0


class AIAnalysis(BaseModel):
    category: Optional[CategoryGuess] = None
    tags: List[TagGuess] = Field(default_factory=list)
    summary: Optional[SummaryBlock] = None
    language: Optional[LanguageGuess] = None
    quality_score: Optional[QualityScore] = None
    sentiment: Optional[Sentiment] = None
    keywords: Optional[Keywords] = None
    content_type: Optional[ContentTypeGuess] = None
    fallback: bool = False


class DuplicateMatch(BaseModel):
    link_id: str
    url: str = ""
    title: Optional[str] = None
    similarity_score: float
    match_type: str  # url | title | content


class DuplicateCheck(BaseModel):
    status: DuplicateStatus = DuplicateStatus.UNIQUE
    matches: List[DuplicateMatch] = Field(default_factory=list)


class ProcessingResult(BaseModel):
    item_id: str
    status: ItemStatus = ItemStatus.SUCCESS
    original_url: str
    extracted_content: Optional[ExtractedContent] = None
    ai_analysis: Optional[AIAnalysis] = None
    duplicate_check: Optional[DuplicateCheck] = None
    processing_time_ms: float = 0.0
    retries: int = 0
    api_calls: int = 0
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class QualityDistribution(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class ProcessingSummary(BaseModel):
    total_items: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    processing_time_ms: float = 0.0
    categories_found: Dict[str, int] = Field(default_factory=dict)
    tags_generated: Dict[str, int] = Field(default_factory=dict)
    languages_detected: Dict[str, int] = Field(default_factory=dict)
    quality_distribution: QualityDistribution = Field(default_factory=QualityDistribution)
    duplicates_found: int = 0
    content_types: Dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class JobProgress(BaseModel):
    total: int = 0
    processed: int = 0
    failed: int = 0
    current_item: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed - self.failed)


class ResourceUsage(BaseModel):
    cpu_time: float = 0.0
    memory_peak: float = 0.0
    api_calls: int = 0


class JobInput(BaseModel):
    items: List[ProcessingItem]
    settings: ProcessingSettings = Field(default_factory=ProcessingSettings)


class JobOutput(BaseModel):
    results: List[ProcessingResult] = Field(default_factory=list)
    summary: Optional[ProcessingSummary] = None


class ProcessingJob(BaseModel):
    """Tracks the lifecycle of a queued link-processing job."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    type: JobType = JobType.SINGLE
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.NORMAL
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    queue_position: Optional[int] = None
    estimated_start_time: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    progress: JobProgress = Field(default_factory=JobProgress)
    retry_count: int = 0
    last_error: Optional[str] = None
    worker_id: Optional[str] = None
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    input: JobInput
    output: Optional[JobOutput] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def result_ids(self) -> set:
        if self.output is None:
            return set()
        return {r.item_id for r in self.output.results}


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class FeedbackType(str, Enum):
    ACCURACY = "accuracy"
    RELEVANCE = "relevance"
    COMPLETENESS = "completeness"
    SUGGESTION = "suggestion"
    ERROR_REPORT = "error_report"


class CategoryFeedback(BaseModel):
    suggested_category: str
    was_correct: bool
    confidence_rating: int = Field(default=3, ge=1, le=5)


class TagFeedback(BaseModel):
    correct_tags: List[str] = Field(default_factory=list)
    incorrect_tags: List[str] = Field(default_factory=list)
    missing_tags: List[str] = Field(default_factory=list)


class SummaryFeedback(BaseModel):
    accuracy_rating: int = Field(ge=1, le=5)
    completeness_rating: int = Field(ge=1, le=5)
    suggested_improvements: str = ""


class ProcessingFeedback(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    job_id: str
    item_id: Optional[str] = None
    feedback_type: FeedbackType
    rating: int = Field(ge=1, le=5)
    category_feedback: Optional[CategoryFeedback] = None
    tag_feedback: Optional[TagFeedback] = None
    summary_feedback: Optional[SummaryFeedback] = None
    comments: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
