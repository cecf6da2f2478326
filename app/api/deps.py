from fastapi import Request

from app.services.job_service import JobService


def get_service(request: Request) -> JobService:
    """The JobService built in the application lifespan."""
    return request.app.state.job_service
