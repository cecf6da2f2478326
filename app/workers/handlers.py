"""
Job Handler Registry
Maps job kind to handler instances
"""

from typing import Any, Dict, Iterable, List, Optional

from app.core.config import settings
from app.core.exceptions import UnknownJobKind
from app.core.logger import info
from app.core.setup_logger import worker_logger
from app.services.advisory_lock import AdvisoryLockService
from app.workers.job_handlers import (
    AppointmentHandler,
    BaseJobHandler,
    LoggingNotificationSink,
    NotificationHandler,
    NotificationSink,
)


class HandlerRegistry:
    """
    Registry of handlers keyed by job kind. New kinds are added by registering
    a handler; the worker pool only ever calls ``dispatch``.
    """

    def __init__(self, handlers: Iterable[BaseJobHandler] = ()):
        self._handlers: Dict[str, BaseJobHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: BaseJobHandler) -> None:
        """
        Register a new handler

        Args:
            handler: Handler instance (must inherit from BaseJobHandler)
        """
        if not isinstance(handler, BaseJobHandler):
            raise TypeError("Handler must inherit from BaseJobHandler")

        info(worker_logger, f"Registering handler for job kind: {handler.kind}")
        self._handlers[handler.kind] = handler

    def get(self, kind: str) -> BaseJobHandler:
        """
        Get handler instance for a given job kind

        Raises:
            UnknownJobKind: If kind is not registered
        """
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnknownJobKind(kind, self.kinds())
        return handler

    def kinds(self) -> List[str]:
        """Get list of all registered job kinds"""
        return list(self._handlers.keys())

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers

    async def dispatch(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate the payload for ``kind`` and run its handler."""
        handler = self.get(kind)
        return await handler.execute(handler.parse(payload))


def build_default_registry(
        lock_service: AdvisoryLockService,
        notification_sink: Optional[NotificationSink] = None,
) -> HandlerRegistry:
    """Registry with the built-in ``process-appointment`` and ``send-notification`` handlers."""
    return HandlerRegistry([
        AppointmentHandler(lock_service, processing_seconds=settings.APPOINTMENT_PROCESSING_SECONDS),
        NotificationHandler(
            notification_sink or LoggingNotificationSink(settings.NOTIFICATION_DELIVERY_SECONDS)
        ),
    ])
