import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api.v1 import api_v1_router
from app.constants.job_kinds import JobKind
from app.core import settings
from app.core.logger import info, warning
from app.core.setup_logger import api_logger
from app.db import connect_queue_store
from app.services.advisory_lock import create_lock_service
from app.services.event_ingestion import EventIngestionAdapter
from app.services.job_service import JobService
from app.services.queue_client import QueueClient
from app.services.queue_inspector import QueueInspector
from app.workers.handlers import build_default_registry
from app.workers.worker import WorkerPool


def create_app(database_url: Optional[str] = None, run_worker: Optional[bool] = None) -> FastAPI:
    """
    Build the API. The queue client, inspector and (optionally) an in-process
    worker pool are created once in the lifespan and kept on ``app.state``.
    """
    if run_worker is None:
        run_worker = settings.RUN_WORKER_IN_API

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = await connect_queue_store(database_url)
        pool = pool_task = None

        if database is None:
            warning(api_logger, "Queue disabled: API serving without background processing")
            queue = QueueClient.disabled()
        else:
            queue = QueueClient(database, registered_kinds=[kind.value for kind in JobKind])
            if run_worker:
                registry = build_default_registry(create_lock_service(database))
                pool = WorkerPool.from_settings(database, registry)
                pool_task = asyncio.create_task(pool.start())

        inspector = QueueInspector(database)
        app.state.database = database
        app.state.queue = queue
        app.state.worker_pool = pool
        app.state.job_service = JobService(queue, inspector, EventIngestionAdapter(queue))

        info(api_logger, "FastAPI application started", context={
            "queue_enabled": queue.enabled,
            "worker_in_process": pool is not None,
        })
        try:
            yield
        finally:
            if pool is not None:
                await pool.stop()
                await pool_task
            if database is not None:
                await database.close()
            info(api_logger, "FastAPI application stopped")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_METHODS,
        allow_headers=settings.CORS_HEADERS,
    )

    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Application running", "version": settings.VERSION}

    @app.get("/health")
    def health_check(request: Request):
        return {
            "status": "ok",
            "queue_enabled": request.app.state.queue.enabled,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.ENVIRONMENT,
        }

    @app.get("/db-health")
    async def db_health_check(request: Request):
        database = request.app.state.database
        if database is None:
            return {"status": "error", "message": "Database not connected"}
        try:
            async with database.session() as db:
                result = await db.execute(text('SELECT 1'))
                _ = result.scalar()
            return {"status": "ok", "message": "Database running"}
        except Exception as e:
            return {"status": "error", "message": str(e)}

    return app


app = create_app()
