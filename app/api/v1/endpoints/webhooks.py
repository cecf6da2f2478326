from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from app.api.deps import get_service
from app.core.logger import info
from app.core.setup_logger import api_logger
from app.schemas import ChangeEvent, WebhookResponse
from app.services.job_service import JobService

router = APIRouter()


@router.post("/supabase", response_model=WebhookResponse)
async def handle_supabase_webhook(
        payload: Dict[str, Any] = Body(...),
        svc: JobService = Depends(get_service)
):
    """
    Receives row change events from the database and enqueues the matching jobs.
    """
    info(api_logger, "Webhook received", context={"type": payload.get("type"), "table": payload.get("table")})

    if not payload.get("type") or not payload.get("table"):
        raise HTTPException(status_code=400, detail="Invalid webhook: type and table are required")

    try:
        event = ChangeEvent.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid webhook: {e}")

    return await svc.handle_webhook(event)
