from app.workers.job_handlers.base_handler import BaseJobHandler
from app.workers.job_handlers.appointment_handler import AppointmentHandler, appointment_lock_key
from app.workers.job_handlers.notification_handler import (
    LoggingNotificationSink,
    NotificationHandler,
    NotificationSink,
)


__all__ = [
    'BaseJobHandler',
    'AppointmentHandler',
    'LoggingNotificationSink',
    'NotificationHandler',
    'NotificationSink',
    'appointment_lock_key',
]
