from enum import Enum


class JobState(Enum):
    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"
