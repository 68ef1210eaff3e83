"""
Automation API Endpoints

- List scheduler jobs and their last results
- Trigger a job immediately
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Header
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from src.api.referrals import get_referral_workflow_service
from src.services.notifications import get_notification_sink
from src.services.scheduler import AutomationScheduler, UnknownJob, build_scheduler


router = APIRouter(prefix="/automation", tags=["automation"])


# =============================================================================
# Module-level services (for dependency injection)
# =============================================================================

_scheduler: Optional[AutomationScheduler] = None


def get_scheduler() -> AutomationScheduler:
    """Get or create the automation scheduler."""
    global _scheduler
    if _scheduler is None:
        workflow_service = get_referral_workflow_service()
        _scheduler = build_scheduler(
            workflow_service.repository,
            workflow_service,
            notifier=get_notification_sink(),
        )
    return _scheduler


def set_scheduler(scheduler: Optional[AutomationScheduler]) -> None:
    """Set scheduler (for testing)."""
    global _scheduler
    _scheduler = scheduler


# =============================================================================
# Response Models
# =============================================================================

class JobStatusResponse(BaseModel):
    running: bool
    jobs: list[dict[str, Any]]


class JobRunResponse(BaseModel):
    job: str
    skipped: bool
    result: Any = None


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/jobs", response_model=JobStatusResponse)
async def list_jobs(x_user_id: str = Header(...)) -> JobStatusResponse:
    scheduler = get_scheduler()
    return JobStatusResponse(running=scheduler.running, jobs=jsonable_encoder(scheduler.get_job_statuses()))


@router.post("/jobs/{job_name}/run", response_model=JobRunResponse)
async def run_job(job_name: str, x_user_id: str = Header(...)) -> JobRunResponse:
    """Run a job now. ``skipped`` is true when it was already running or failed."""
    scheduler = get_scheduler()
    if job_name not in scheduler.job_names():
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
    try:
        result = await run_in_threadpool(scheduler.run_job, job_name)
    except UnknownJob:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
    return JobRunResponse(job=job_name, skipped=result is None, result=jsonable_encoder(result))
