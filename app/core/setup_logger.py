"""
Centralized logger factory for the application
Separate loggers for the API, the worker pool, the queue client and the database
"""
import logging

from app.core.config import settings
from app.core.logger import setup_logging


def _make(app_name: str, level=logging.INFO):
    return setup_logging(
        log_level=logging.DEBUG if settings.DEBUG else level,
        log_dir=settings.LOG_DIR,
        app_name=app_name,
        backup_count=settings.LOG_BACKUP_COUNT,
        to_file=bool(settings.LOG_DIR),
    )


# API Logger - for FastAPI application and event ingestion
api_logger = _make('api')

# Worker Logger - for background job processing
worker_logger = _make('worker')

# Queue Logger - enqueue / inspection / locks
queue_logger = _make('queue')

# Database Logger - only warnings and errors
db_logger = _make('db', level=logging.WARNING)

