from fastapi import APIRouter

from app.api.v1.endpoints import jobs, webhooks

router = APIRouter()

router.include_router(jobs.router, tags=["jobs"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
