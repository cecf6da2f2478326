from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeType(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """Row change notification sent by the database webhook."""
    model_config = ConfigDict(extra="ignore")

    type: str
    table: str
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    job_ids: List[int] = Field(default_factory=list)
