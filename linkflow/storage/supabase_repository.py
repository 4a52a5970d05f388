"""Supabase-backed repository.

Tables (all keyed by ``id`` with a ``payload`` jsonb column holding the full record):

- processing_jobs      (id, user_id, status, payload)
- queue_config         (id = "default", payload)
- queue_metrics        (id, timestamp, payload)
- processing_feedback  (id, job_id, payload)

Collection saves are total overwrites: upsert every current row, then delete rows whose
id is no longer present.
"""

import logging
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError
from supabase import create_client

from linkflow.jobs.errors import StorageError
from linkflow.jobs.metrics import QueueMetrics
from linkflow.jobs.models import ProcessingFeedback, ProcessingJob
from linkflow.jobs.queue_config import QueueConfig, load_or_default
from linkflow.storage.repository import JobRepository

logger = logging.getLogger(__name__)

CONFIG_ROW_ID = "default"


class SupabaseRepository(JobRepository):
    name = "supabase"

    def __init__(self, client: Any):
        self._db = client

    @classmethod
    def from_credentials(cls, url: str, service_role_key: str) -> "SupabaseRepository":
        """Connect with the service-role key; queue tables are not exposed to end users."""
        if not url or not service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(url, service_role_key))

    def _select(self, table: str, order: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            query = self._db.table(table).select("id, payload")
            if order:
                query = query.order(order)
            response = query.execute()
        except Exception as exc:
            raise StorageError(f"Could not read {table}: {exc}") from exc
        return response.data or []

    def _replace(self, table: str, rows: List[Dict[str, Any]]) -> None:
        ids = [row["id"] for row in rows]
        try:
            if rows:
                self._db.table(table).upsert(rows).execute()
                self._db.table(table).delete().not_.in_("id", ids).execute()
            else:
                self._db.table(table).delete().neq("id", "").execute()
        except Exception as exc:
            raise StorageError(f"Could not write {table}: {exc}") from exc

    def _payloads(self, table: str, model: Type[BaseModel], order: Optional[str] = None) -> list:
        try:
            return [model.model_validate(row["payload"]) for row in self._select(table, order)]
        except (KeyError, ValidationError) as exc:
            raise StorageError(f"Malformed row in {table}: {exc}") from exc

    def load_jobs(self) -> List[ProcessingJob]:
        return self._payloads("processing_jobs", ProcessingJob)

    def save_jobs(self, jobs: List[ProcessingJob]) -> None:
        self._replace("processing_jobs", [
            {
                "id": job.id,
                "user_id": job.user_id,
                "status": job.status.value,
                "payload": job.model_dump(mode="json"),
            }
            for job in jobs
        ])

    def load_config(self) -> Optional[QueueConfig]:
        for row in self._select("queue_config"):
            if row.get("id") == CONFIG_ROW_ID:
                return load_or_default(row.get("payload") or {})
        return None

    def save_config(self, config: QueueConfig) -> None:
        try:
            self._db.table("queue_config").upsert({
                "id": CONFIG_ROW_ID,
                "payload": config.model_dump(mode="json"),
            }).execute()
        except Exception as exc:
            raise StorageError(f"Could not write queue_config: {exc}") from exc

    def load_metrics(self) -> List[QueueMetrics]:
        return self._payloads("queue_metrics", QueueMetrics, order="timestamp")

    def save_metrics(self, history: List[QueueMetrics]) -> None:
        self._replace("queue_metrics", [
            {"id": m.id, "timestamp": m.timestamp.isoformat(), "payload": m.model_dump(mode="json")}
            for m in history
        ])

    def load_feedback(self) -> List[ProcessingFeedback]:
        return self._payloads("processing_feedback", ProcessingFeedback)

    def save_feedback(self, feedback: List[ProcessingFeedback]) -> None:
        self._replace("processing_feedback", [
            {"id": f.id, "job_id": f.job_id, "payload": f.model_dump(mode="json")}
            for f in feedback
        ])
