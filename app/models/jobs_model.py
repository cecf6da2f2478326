from sqlalchemy import Index
from sqlalchemy.sql.schema import Column
from sqlalchemy.sql.sqltypes import String, DateTime, Integer, JSON, Text

from app.constants.job_state import JobState
from app.models.base_model import BaseModel, utcnow


class Jobs(BaseModel):
    __tablename__ = "jobs"
    __table_args__ = (
        # claim order: state, due time, priority, creation order
        Index("ix_jobs_claim", "state", "run_at", "priority", "id"),
        {"sqlite_autoincrement": True},
    )

    #core
    kind = Column(String(100), nullable=False, index=True)

    #Job Data
    payload = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)

    # Job state and scheduling
    state = Column(String(20), nullable=False, default=JobState.waiting.value, index=True)
    priority = Column(Integer, nullable=False, default=2)
    delay_ms = Column(Integer, nullable=False, default=0)
    run_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Retry logic
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_type = Column(String(20), nullable=False, default="exponential")
    backoff_delay_ms = Column(Integer, nullable=False, default=2000)
    last_error = Column(Text, nullable=True)

    # Ownership while active
    worker_id = Column(String(255), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
