"""
send-notification job handler
"""
import asyncio
from datetime import datetime, timezone
from typing import Dict, Any, Protocol

from app.constants.job_kinds import JobKind
from app.core.logger import info
from app.core.setup_logger import worker_logger
from app.schemas.payloads import NotificationPayload
from app.workers.job_handlers.base_handler import BaseJobHandler


class NotificationSink(Protocol):
    """Delivery channel. Duplicate deliveries must be tolerated by the sink."""

    async def deliver(self, notification: NotificationPayload) -> None:
        ...


class LoggingNotificationSink:
    """Simulated delivery: waits, then logs the notification"""

    def __init__(self, delivery_seconds: float = 1.0):
        self.delivery_seconds = delivery_seconds

    async def deliver(self, notification: NotificationPayload) -> None:
        await asyncio.sleep(self.delivery_seconds)
        info(worker_logger, f"Notification sent: {notification.type} to {notification.recipient}", context={
            "notification_id": notification.id,
            "context_keys": sorted(notification.context),
        })


class NotificationHandler(BaseJobHandler):
    """Handler for notification jobs, no locking"""

    payload_model = NotificationPayload

    def __init__(self, sink: NotificationSink):
        super().__init__()
        self.sink = sink

    @property
    def kind(self) -> str:
        return JobKind.send_notification.value

    async def execute(self, payload: NotificationPayload) -> Dict[str, Any]:
        await self.sink.deliver(payload)

        return {
            "notification_id": payload.id,
            "type": payload.type,
            "recipient": payload.recipient,
            "status": "sent",
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
