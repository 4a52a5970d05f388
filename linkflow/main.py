"""Linkflow: link enrichment job queue service.

FastAPI application serving the queue API: job submission and tracking, batch
lifecycle operations, queue status, metrics, runtime config and cleanup.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from linkflow.api.v1 import deps
from linkflow.api.v1.router import v1_router
from linkflow.config import Settings, settings
from linkflow.jobs.errors import QueueError
from linkflow.jobs.service import QueueService
from linkflow.processing.analyzer import OpenAIContentAnalyzer
from linkflow.processing.duplicates import InMemoryLinkIndex, JsonFileLinkIndex
from linkflow.processing.extractor import HttpContentExtractor
from linkflow.storage.json_repository import JsonFileRepository
from linkflow.storage.repository import InMemoryRepository, JobRepository
from linkflow.storage.supabase_repository import SupabaseRepository
from linkflow.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def build_repository(config: Settings) -> JobRepository:
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryRepository()
    if backend == "supabase":
        return SupabaseRepository.from_credentials(config.supabase_url, config.supabase_service_role_key)
    if backend == "json":
        return JsonFileRepository(config.data_dir)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


def build_service(config: Settings) -> QueueService:
    analyzer = None
    if config.openai_api_key:
        analyzer = OpenAIContentAnalyzer(api_key=config.openai_api_key, model=config.openai_model)
    else:
        logger.warning("No OpenAI API key configured; items will get fallback analysis")
    link_index = JsonFileLinkIndex(config.links_file) if config.links_file else InMemoryLinkIndex()
    return QueueService(
        repository=build_repository(config),
        extractor=HttpContentExtractor(config.extractor_timeout_s, config.extractor_user_agent),
        analyzer=analyzer,
        link_index=link_index,
        poll_interval=config.dispatch_poll_interval,
    )


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(service: Optional[QueueService] = None, start_workers: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging(settings.log_level)
        queue = service or build_service(settings)
        logger.info(
            "Starting Linkflow on port %s (storage: %s)", settings.api_port, queue.repository.name
        )
        await queue.start(start_workers=start_workers)
        deps.set_service(queue)
        app.state.service = queue

        yield

        logger.info("Shutting down Linkflow")
        await queue.stop()
        deps.set_service(None)

    app = FastAPI(
        title="Linkflow Queue Service",
        description="Queued link enrichment: extraction, AI analysis and duplicate detection",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(QueueError, queue_error_handler)
    app.include_router(v1_router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run("linkflow.main:app", host=settings.api_host, port=settings.api_port, reload=False)


if __name__ == "__main__":
    run()
