from app.models.advisory_lock_model import AdvisoryLocks
from app.models.jobs_model import Jobs

__all__ = [
    "AdvisoryLocks",
    "Jobs",
]
