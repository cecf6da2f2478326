"""
Event Ingestion Adapter

Turns database change events (webhook) and direct request-path hooks into
queue submissions. Queue failures are logged and swallowed here: the write
that triggered the event has already happened and must not fail because of
background processing.
"""
from typing import Any, Dict, List, Optional

from app.constants.job_kinds import NotificationType
from app.core.logger import info, warning, error
from app.core.setup_logger import api_logger
from app.schemas.events import ChangeEvent, ChangeType
from app.schemas.job_schemas import JobResponse
from app.services.queue_client import QueueClient, SubmitResult

APPOINTMENTS_TABLE = "appointments"
WAITLIST_TABLE = "waitlist"
AUTH_USERS_TABLE = "auth.users"


class EventIngestionAdapter:

    def __init__(self, queue: QueueClient):
        self.queue = queue

    def _collect(self, result: SubmitResult, description: str, entity_id: Any, jobs: List[JobResponse]):
        if result.ok:
            info(api_logger, f"Job added for {description}", context={
                "job_id": result.job.id,
                "entity_id": entity_id,
            })
            jobs.append(result.job)
        else:
            error(api_logger, f"Could not enqueue job for {description}, continuing", context={
                "entity_id": entity_id,
                "error": str(result.error),
            })

    async def _notify(self, notification_type: NotificationType, entity: Dict[str, Any],
                      recipient: Optional[str], jobs: List[JobResponse], **context):
        payload = {
            "id": entity.get("id"),
            "type": notification_type.value,
            "recipient": recipient,
            **context,
        }
        result = await self.queue.submit_notification(payload)
        self._collect(result, f"{notification_type.value} notification", entity.get("id"), jobs)

    # direct request-path hooks, called by the appointment and waitlist CRUD
    # layer after its write commits; the change-event webhook covers the rest

    async def appointment_created(self, appointment: Dict[str, Any]) -> List[JobResponse]:
        """
        Integration hook for the CRUD layer: processing job plus an
        ``appointment_created`` notification for a freshly written appointment.
        """
        jobs: List[JobResponse] = []
        result = await self.queue.submit_appointment(appointment)
        self._collect(result, "appointment processing", appointment.get("id"), jobs)
        await self._notify(
            NotificationType.appointment_created,
            appointment,
            appointment.get("patient_email"),
            jobs,
            appointment=appointment,
        )
        return jobs

    async def waitlist_entry_added(self, entry: Dict[str, Any]) -> List[JobResponse]:
        """Integration hook for the CRUD layer: ``waitlist_added`` notification."""
        jobs: List[JobResponse] = []
        await self._notify(
            NotificationType.waitlist_added,
            entry,
            entry.get("patient_email"),
            jobs,
            waitlist=entry,
        )
        return jobs

    # change events

    async def handle_change_event(self, event: ChangeEvent) -> List[JobResponse]:
        """
        Map a row change to queue submissions:
            INSERT appointments -> process-appointment
            INSERT waitlist     -> waitlist_added notification
            INSERT auth.users   -> user_created notification
            UPDATE appointments -> appointment_status_changed (status changed only)
            DELETE appointments -> appointment_cancelled notification
        """
        try:
            change = ChangeType(event.type.upper())
        except ValueError:
            warning(api_logger, f"Unsupported event type: {event.type}", context={"table": event.table})
            return []

        if change is ChangeType.INSERT:
            return await self._handle_insert(event)
        if change is ChangeType.UPDATE:
            return await self._handle_update(event)
        return await self._handle_delete(event)

    async def _handle_insert(self, event: ChangeEvent) -> List[JobResponse]:
        record = event.record or {}
        jobs: List[JobResponse] = []

        if event.table == APPOINTMENTS_TABLE:
            result = await self.queue.submit_appointment(record)
            self._collect(result, "appointment processing", record.get("id"), jobs)
        elif event.table == WAITLIST_TABLE:
            await self._notify(NotificationType.waitlist_added, record, record.get("patient_email"), jobs,
                               waitlist=record)
        elif event.table == AUTH_USERS_TABLE:
            await self._notify(NotificationType.user_created, record, record.get("email"), jobs, user=record)
        else:
            info(api_logger, f"Table not handled for INSERT: {event.table}")

        return jobs

    async def _handle_update(self, event: ChangeEvent) -> List[JobResponse]:
        jobs: List[JobResponse] = []

        if event.table != APPOINTMENTS_TABLE:
            info(api_logger, f"Table not handled for UPDATE: {event.table}")
            return jobs

        record = event.record or {}
        if event.old_record is None:
            warning(api_logger, "UPDATE event without old_record, status change unknown", context={
                "entity_id": record.get("id"),
            })
            return jobs

        old_status = event.old_record.get("status")
        new_status = record.get("status")
        if old_status != new_status:
            await self._notify(
                NotificationType.appointment_status_changed,
                record,
                record.get("patient_email"),
                jobs,
                appointment=record,
                old_status=old_status,
                new_status=new_status,
            )
        return jobs

    async def _handle_delete(self, event: ChangeEvent) -> List[JobResponse]:
        jobs: List[JobResponse] = []

        if event.table != APPOINTMENTS_TABLE:
            info(api_logger, f"Table not handled for DELETE: {event.table}")
            return jobs

        old_record = event.old_record or {}
        await self._notify(
            NotificationType.appointment_cancelled,
            old_record,
            old_record.get("patient_email"),
            jobs,
            appointment=old_record,
        )
        return jobs
