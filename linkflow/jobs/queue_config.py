"""Runtime queue tunables with defaults, bounds and partial-update merging."""

from typing import Any, Dict, Mapping

from pydantic import BaseModel, Field, ValidationError, model_validator

from linkflow.jobs.errors import ConfigValidationError
from linkflow.jobs.models import JobPriority


class PriorityWeights(BaseModel):
    urgent: int = Field(default=4, ge=0, le=100)
    high: int = Field(default=3, ge=0, le=100)
    normal: int = Field(default=2, ge=0, le=100)
    low: int = Field(default=1, ge=0, le=100)

    model_config = {"extra": "forbid"}

    def weight(self, priority: JobPriority) -> int:
        return getattr(self, JobPriority(priority).value)


class ProcessingLimits(BaseModel):
    # Seconds throughout
    single_job_timeout: float = Field(default=300.0, ge=1, le=3600)
    batch_job_timeout: float = Field(default=1800.0, ge=1, le=86400)
    max_items_per_batch: int = Field(default=100, ge=1, le=1000)
    retry_attempts: int = Field(default=3, ge=0, le=10)
    retry_delay: float = Field(default=5.0, ge=0, le=300)
    stage_timeout: float = Field(default=30.0, ge=1, le=600)

    model_config = {"extra": "forbid"}


class ResourceAllocation(BaseModel):
    cpu_limit_percent: float = Field(default=80.0, ge=1, le=100)
    memory_limit_mb: float = Field(default=2048.0, ge=64, le=65536)
    api_rate_limit_per_minute: int = Field(default=100, ge=1, le=10000)

    model_config = {"extra": "forbid"}


class AutoScaling(BaseModel):
    """Advisory only; nothing in the pool acts on these values."""
    enabled: bool = False
    scale_up_threshold: float = Field(default=0.8, ge=0, le=1)
    scale_down_threshold: float = Field(default=0.3, ge=0, le=1)
    min_workers: int = Field(default=1, ge=1, le=50)
    max_workers: int = Field(default=10, ge=1, le=50)

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _ordered(self) -> "AutoScaling":
        if self.min_workers > self.max_workers:
            raise ValueError("min_workers must not exceed max_workers")
        if self.scale_down_threshold > self.scale_up_threshold:
            raise ValueError("scale_down_threshold must not exceed scale_up_threshold")
        return self


class Maintenance(BaseModel):
    cleanup_completed_jobs_after_days: float = Field(default=7, ge=0, le=365)
    cleanup_failed_jobs_after_days: float = Field(default=30, ge=0, le=365)
    cleanup_cancelled_jobs_after_days: float = Field(default=7, ge=0, le=365)
    max_metrics_history: int = Field(default=100, ge=1, le=10000)

    model_config = {"extra": "forbid"}


class QueueConfig(BaseModel):
    max_concurrent_jobs: int = Field(default=5, ge=1, le=50)
    max_queue_size: int = Field(default=100, ge=10, le=1000)
    priority_weights: PriorityWeights = Field(default_factory=PriorityWeights)
    processing_limits: ProcessingLimits = Field(default_factory=ProcessingLimits)
    resource_allocation: ResourceAllocation = Field(default_factory=ResourceAllocation)
    auto_scaling: AutoScaling = Field(default_factory=AutoScaling)
    maintenance: Maintenance = Field(default_factory=Maintenance)

    model_config = {"extra": "forbid"}


def deep_merge(base: Dict[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def format_validation_errors(exc: ValidationError) -> list:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid value"))
    return messages


def validate_config(data: Mapping[str, Any]) -> QueueConfig:
    try:
        return QueueConfig.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigValidationError(format_validation_errors(exc)) from exc


def merge_config(current: QueueConfig, updates: Mapping[str, Any]) -> QueueConfig:
    """Apply a partial update on top of ``current`` and validate the result.

    Nested sections merge key by key, so ``{"processing_limits": {"retry_attempts": 1}}``
    leaves the other limits untouched. Unknown keys and out-of-range values raise
    ConfigValidationError listing every offending field.
    """
    if not isinstance(updates, Mapping):
        raise ConfigValidationError(["config updates must be an object"])
    return validate_config(deep_merge(current.model_dump(), updates))


def load_or_default(data: Mapping[str, Any] | None) -> QueueConfig:
    """Build a config from stored data, falling back to defaults for missing sections."""
    if not data:
        return QueueConfig()
    return merge_config(QueueConfig(), data)
