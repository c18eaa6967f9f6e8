"""
moviegen worker: FastAPI application.

  uvicorn moviegen.main:app --host 0.0.0.0 --port 8080

Startup wires the pipeline from WorkerSettings:
  Supabase configured → SupabaseJobStore + SupabaseProviderRepository
  otherwise           → in-memory stores (local runs, mock mode demos)
  Redis reachable     → queue mode: stale tasks recovered, consumer threads
                        started (one per MAX_CONCURRENT_JOBS)
  otherwise           → in-process asyncio tasks bounded by job_slots
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import redis
import uvicorn
from fastapi import FastAPI, Query
from redis.exceptions import RedisError
from supabase import Client, create_client

from . import job_slots, metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline.assembly import AssemblyResolver
from .pipeline.orchestrator import Orchestrator
from .pipeline.routes import movie_router
from .pipeline.runner import JobRunner
from .pipeline.storage import R2ArtifactStore
from .pipeline.store import InMemoryJobStore, SupabaseJobStore
from .providers.gateway import ProviderGateway
from .providers.registry import InMemoryProviderRepository, SupabaseProviderRepository
from .queue import TaskQueue
from .settings import WorkerSettings, load_settings

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request URL at INFO; some vendors put keys in query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ── Clients ──────────────────────────────────────────────────────────────────

def connect_supabase(settings: WorkerSettings) -> Optional[Client]:
    if not settings.supabase_configured:
        return None
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def connect_redis(settings: WorkerSettings):
    """Redis client, or None when unset or unreachable."""
    if not settings.redis_url:
        return None
    client = redis.from_url(settings.redis_url, decode_responses=False)
    try:
        client.ping()
    except RedisError as e:
        logger.warning(f"Redis connection failed: {e}; running jobs in-process")
        return None
    logger.info(f"Redis connected: {settings.redis_url[:30]}...")
    return client


def build_runner(settings: WorkerSettings) -> JobRunner:
    supabase = connect_supabase(settings)
    if supabase is not None:
        store = SupabaseJobStore(supabase)
        repository = SupabaseProviderRepository(supabase)
    else:
        logger.warning("Supabase not configured; using in-memory job and provider stores")
        store = InMemoryJobStore()
        repository = InMemoryProviderRepository()

    artifacts = R2ArtifactStore.from_settings(settings)
    if artifacts is None:
        logger.warning("R2 not configured; vendors that return raw bytes cannot be used")

    def orchestrator_factory() -> Orchestrator:
        gateway = ProviderGateway(settings.gateway, repository, artifacts=artifacts)
        return Orchestrator(store, gateway, AssemblyResolver(settings.assembly), settings.pipeline)

    redis_client = connect_redis(settings)
    return JobRunner(
        store,
        orchestrator_factory,
        queue=TaskQueue(redis_client) if redis_client is not None else None,
        consumer_threads=settings.max_concurrent_jobs,
    )


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(settings: Optional[WorkerSettings] = None, runner: Optional[JobRunner] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Worker starting up (environment={settings.environment}, mock={settings.gateway.mock_mode})")
        metrics.set_gauge("start_time", time.time())
        job_slots.configure(settings.max_concurrent_jobs)
        if getattr(app.state, "runner", None) is None:
            app.state.runner = build_runner(settings)
        app.state.runner.start_consumers()
        logger.info(f"Job runner ready ({app.state.runner.mode})")
        yield
        logger.info("Worker shutting down...")
        await app.state.runner.aclose()

    app = FastAPI(title="moviegen worker", lifespan=lifespan)
    app.state.settings = settings
    app.state.runner = runner
    app.add_middleware(
        WorkerAuthMiddleware,
        secret=settings.worker_secret,
        environment=settings.environment,
    )
    app.include_router(movie_router)

    @app.get("/health")
    def health_check():
        """Configuration presence only; never values."""
        current = app.state.runner
        return {
            "status": "ok",
            "supabase_configured": settings.supabase_configured,
            "redis_configured": bool(settings.redis_url),
            "queue_mode": bool(current and current.queue is not None),
            "r2_configured": settings.r2_configured,
            "mock_mode": settings.gateway.mock_mode,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        current = app.state.runner
        if current is not None and current.queue is not None:
            try:
                metrics.set_gauge("queue_depth", current.queue.pending_count())
                metrics.set_gauge("processing_count", current.queue.processing_count())
            except RedisError as e:
                logger.warning(f"Could not read queue depth: {e}")
        metrics.set_gauge("active_in_process_jobs", job_slots.active_count())
        return metrics.get_snapshot()

    @app.get("/queue/status")
    def queue_status(job_id: str = Query(...)):
        """Queue position and task status for a job."""
        current = app.state.runner
        if current is None or current.queue is None:
            return {
                "job_id": job_id,
                "status": "processing" if job_slots.is_active(job_id) else "not_queued",
                "queue_position": None,
                "estimated_wait_seconds": 0,
                "mode": "in_process",
            }
        return {**current.queue.status(job_id), "mode": "queue"}

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("moviegen.main:app", host="0.0.0.0", port=port)
