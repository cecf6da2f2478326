from enum import Enum


class JobKind(Enum):
    process_appointment = "process-appointment"
    send_notification = "send-notification"


class NotificationType(Enum):
    appointment_created = "appointment_created"
    appointment_status_changed = "appointment_status_changed"
    appointment_cancelled = "appointment_cancelled"
    waitlist_added = "waitlist_added"
    user_created = "user_created"


# lower runs first when several jobs are eligible
DEFAULT_PRIORITIES = {
    JobKind.process_appointment.value: 1,
    JobKind.send_notification.value: 2,
}
FALLBACK_PRIORITY = 2


def default_priority(kind: str) -> int:
    return DEFAULT_PRIORITIES.get(kind, FALLBACK_PRIORITY)
