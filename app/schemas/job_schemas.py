from datetime import datetime
from typing import Dict, Any, Optional

from app.constants.job_state import JobState
from pydantic import BaseModel, ConfigDict, Field


class JobCreate(BaseModel):
    """Schema for Job Creation"""

    kind: str = Field(..., min_length=1, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    delay: int = Field(default=0, ge=0, description="Milliseconds before the job becomes eligible")


class JobResponse(BaseModel):
    """Schema for job response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    payload: Dict[str, Any]
    priority: int
    delay_ms: int
    state: JobState
    run_at: datetime
    attempts_made: int
    max_attempts: int
    backoff_type: str
    backoff_delay_ms: int
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    worker_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Schema for job queue statistics."""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class QueueStatsByKind(BaseModel):
    """Per-kind breakdown of the queue statistics."""
    total: QueueStats
    kinds: Dict[str, QueueStats]


class StaleJobsReset(BaseModel):
    requeued: int
    failed: int

