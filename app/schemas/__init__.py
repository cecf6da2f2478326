from .job_schemas import (
    JobCreate,
    JobResponse,
    QueueStats,
    QueueStatsByKind,
    StaleJobsReset,
)
from .payloads import AppointmentPayload, NotificationPayload
from .events import ChangeEvent, ChangeType, WebhookResponse

__all__ = [
    "JobCreate",
    "JobResponse",
    "QueueStats",
    "QueueStatsByKind",
    "StaleJobsReset",
    "AppointmentPayload",
    "NotificationPayload",
    "ChangeEvent",
    "ChangeType",
    "WebhookResponse",
]
