from app.constants.job_kinds import JobKind, NotificationType, default_priority
from app.constants.job_state import JobState

__all__ = [
    "JobKind",
    "JobState",
    "NotificationType",
    "default_priority",
]
