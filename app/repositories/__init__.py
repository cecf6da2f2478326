from app.repositories.job_repository import JobRepository
from app.repositories.lock_repository import AdvisoryLockRepository

__all__ = [
    "AdvisoryLockRepository",
    "JobRepository",
]
