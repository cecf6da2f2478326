"""
process-appointment job handler
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, Any

from app.constants.job_kinds import JobKind
from app.core.exceptions import AlreadyProcessing
from app.core.logger import info, debug
from app.schemas.payloads import AppointmentPayload
from app.services.advisory_lock import AdvisoryLockService
from app.workers.job_handlers.base_handler import BaseJobHandler


def appointment_lock_key(payload: AppointmentPayload) -> str:
    """
    ``appointment_<id>``. Without an id the key falls back to the current
    epoch milliseconds, which gives no real mutual exclusion.
    """
    entity_id = payload.id
    if entity_id is None or entity_id == "":
        entity_id = int(time.time() * 1000)
    return f"appointment_{entity_id}"


class AppointmentHandler(BaseJobHandler):
    """Processes a newly created appointment under its advisory lock"""

    payload_model = AppointmentPayload

    def __init__(self, lock_service: AdvisoryLockService, processing_seconds: float = 2.0):
        super().__init__()
        self.lock_service = lock_service
        self.processing_seconds = processing_seconds

    @property
    def kind(self) -> str:
        return JobKind.process_appointment.value

    async def process(self, payload: AppointmentPayload) -> None:
        # Simulated processing (validation, calendar sync, ...)
        await asyncio.sleep(self.processing_seconds)

    async def execute(self, payload: AppointmentPayload) -> Dict[str, Any]:
        lock_key = appointment_lock_key(payload)

        async with self.lock_service.hold(lock_key) as lock:
            if not lock.locked:
                info(self.logger, "Could not acquire lock for appointment", context={"lock_key": lock_key})
                raise AlreadyProcessing(lock_key)

            debug(self.logger, "Lock acquired for appointment", context={"lock_key": lock_key})
            await self.process(payload)

            result = {
                "entity_id": payload.id,
                "status": "processed",
                "processed_at": datetime.now(timezone.utc).isoformat(),
                "lock_key": lock_key,
            }

        info(self.logger, "Appointment processed successfully", context=result)
        return result
