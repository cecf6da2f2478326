
"""
Worker Entry Point
This is the main entry point for the background job worker process
Run with: python -m app.worker_main
"""

import asyncio
import sys

from app.core.config import settings
from app.core.setup_logger import worker_logger
from app.core.logger import info, warning, critical
from app.db import connect_queue_store
from app.services.advisory_lock import create_lock_service
from app.workers.handlers import build_default_registry
from app.workers.worker import WorkerPool


async def main():
    """
    Connect to the queue store and run the worker pool until a signal arrives.

    An unreachable store is not a crash: the process logs and exits cleanly so
    the rest of the system keeps running without background processing.
    """
    info(worker_logger, "Worker process starting...")

    database = await connect_queue_store()
    if database is None:
        warning(worker_logger, "Queue store unreachable, worker pool not started")
        return

    try:
        registry = build_default_registry(create_lock_service(database))
        pool = WorkerPool.from_settings(database, registry)

        info(worker_logger, "Worker pool created successfully", context={
            "worker_id": pool.worker_id,
            "concurrency": pool.concurrency,
            "kinds": registry.kinds(),
            "max_attempts": settings.JOB_MAX_ATTEMPTS,
        })

        # blocks until SIGTERM / SIGINT
        await pool.start(install_signal_handlers=True)

    except Exception as e:
        critical(worker_logger, "Worker failed", context={
            "error": str(e),
            "error_type": type(e).__name__
        }, exc_info=True)
        sys.exit(1)
    finally:
        await database.close()

    info(worker_logger, "Worker process terminated")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        info(worker_logger, "Worker stopped by user")
