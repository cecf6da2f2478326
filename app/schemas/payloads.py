"""
Typed payloads per job kind

Payloads stay open (extra keys are kept) because callers pass whole database
records; only the fields the handlers rely on are declared.
"""
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class AppointmentPayload(BaseModel):
    """Snapshot of an appointment row, for ``process-appointment``."""
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None


class NotificationPayload(BaseModel):
    """Notification request, for ``send-notification``."""
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None
    type: str = Field(..., min_length=1)
    recipient: Optional[str] = None

    @property
    def context(self) -> Dict[str, Any]:
        """Snapshot of the triggering entity (every key beyond id/type/recipient)."""
        return dict(self.model_extra or {})
