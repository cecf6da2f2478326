from app.core import config
from app.core.config import settings
from app.core.setup_logger import api_logger, worker_logger, queue_logger, db_logger

__all__ = [
    'config',
    'settings',
    'worker_logger',
    'queue_logger',
    'db_logger',
    'api_logger',
]
