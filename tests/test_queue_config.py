import pytest

from linkflow.jobs.errors import ConfigValidationError
from linkflow.jobs.models import JobPriority
from linkflow.jobs.queue_config import QueueConfig, load_or_default, merge_config


def test_defaults() -> None:
    config = QueueConfig()

    assert config.max_concurrent_jobs == 5
    assert config.max_queue_size == 100
    assert config.priority_weights.weight(JobPriority.URGENT) == 4
    assert config.priority_weights.weight("low") == 1
    assert config.processing_limits.retry_attempts == 3
    assert config.auto_scaling.enabled is False


def test_partial_update_merges_nested_sections() -> None:
    merged = merge_config(QueueConfig(), {"priority_weights": {"low": 0}, "max_concurrent_jobs": 2})

    assert merged.priority_weights.low == 0
    assert merged.priority_weights.urgent == 4
    assert merged.max_concurrent_jobs == 2


@pytest.mark.parametrize("updates, field", [
    ({"max_concurrent_jobs": 51}, "max_concurrent_jobs"),
    ({"max_queue_size": 9}, "max_queue_size"),
    ({"processing_limits": {"retry_attempts": -1}}, "processing_limits.retry_attempts"),
    ({"maintenance": {"max_metrics_history": 0}}, "maintenance.max_metrics_history"),
    ({"surprise": True}, "surprise"),
])
def test_out_of_range_values_are_rejected(updates, field) -> None:
    with pytest.raises(ConfigValidationError) as exc_info:
        merge_config(QueueConfig(), updates)

    assert any(problem.startswith(field) for problem in exc_info.value.problems)


def test_auto_scaling_bounds_must_be_ordered() -> None:
    with pytest.raises(ConfigValidationError):
        merge_config(QueueConfig(), {"auto_scaling": {"min_workers": 5, "max_workers": 2}})


def test_non_mapping_update_is_rejected() -> None:
    with pytest.raises(ConfigValidationError):
        merge_config(QueueConfig(), ["max_concurrent_jobs", 3])


def test_load_or_default_fills_missing_sections() -> None:
    assert load_or_default(None) == QueueConfig()
    loaded = load_or_default({"processing_limits": {"stage_timeout": 12}})
    assert loaded.processing_limits.stage_timeout == 12
    assert loaded.processing_limits.retry_delay == 5
