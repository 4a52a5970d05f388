"""File-backed repository: one JSON document per collection in a data directory."""

import json
import logging
import os
import tempfile
from typing import Any, List, Optional, Type

from pydantic import BaseModel, ValidationError

from linkflow.jobs.errors import StorageError
from linkflow.jobs.metrics import QueueMetrics
from linkflow.jobs.models import ProcessingFeedback, ProcessingJob
from linkflow.jobs.queue_config import QueueConfig, load_or_default
from linkflow.storage.repository import JobRepository

logger = logging.getLogger(__name__)

JOBS_FILE = "processing_jobs.json"
CONFIG_FILE = "queue_config.json"
METRICS_FILE = "queue_metrics.json"
FEEDBACK_FILE = "processing_feedback.json"


class JsonFileRepository(JobRepository):
    """Persists collections as pretty-printed JSON files under ``data_dir``.

    Writes go to a temp file in the same directory and are moved into place, so a
    crash mid-write never leaves a truncated document behind.
    """

    name = "json"

    def __init__(self, data_dir: Optional[str] = None):
        if data_dir:
            self._data_dir = data_dir
        else:
            self._data_dir = os.path.join(tempfile.gettempdir(), "linkflow_data")
        os.makedirs(self._data_dir, exist_ok=True)

    @property
    def data_dir(self) -> str:
        return self._data_dir

    def _path(self, filename: str) -> str:
        return os.path.join(self._data_dir, filename)

    def _read(self, filename: str) -> Any:
        path = self._path(filename)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Could not read {filename}: {exc}") from exc

    def _write(self, filename: str, payload: Any) -> None:
        path = self._path(filename)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self._data_dir, prefix=f".{filename}.")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(f"Could not write {filename}: {exc}") from exc

    def _rows(self, filename: str, model: Type[BaseModel]) -> list:
        try:
            return [model.model_validate(row) for row in self._read(filename) or []]
        except ValidationError as exc:
            raise StorageError(f"Malformed record in {filename}: {exc}") from exc

    def load_jobs(self) -> List[ProcessingJob]:
        return self._rows(JOBS_FILE, ProcessingJob)

    def save_jobs(self, jobs: List[ProcessingJob]) -> None:
        self._write(JOBS_FILE, [j.model_dump(mode="json") for j in jobs])

    def load_config(self) -> Optional[QueueConfig]:
        data = self._read(CONFIG_FILE)
        if data is None:
            return None
        return load_or_default(data)

    def save_config(self, config: QueueConfig) -> None:
        self._write(CONFIG_FILE, config.model_dump(mode="json"))

    def load_metrics(self) -> List[QueueMetrics]:
        return self._rows(METRICS_FILE, QueueMetrics)

    def save_metrics(self, history: List[QueueMetrics]) -> None:
        self._write(METRICS_FILE, [m.model_dump(mode="json") for m in history])

    def load_feedback(self) -> List[ProcessingFeedback]:
        return self._rows(FEEDBACK_FILE, ProcessingFeedback)

    def save_feedback(self, feedback: List[ProcessingFeedback]) -> None:
        self._write(FEEDBACK_FILE, [f.model_dump(mode="json") for f in feedback])
