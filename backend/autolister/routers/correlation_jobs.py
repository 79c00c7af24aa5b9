from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from autolister.config import settings
from autolister.errors import CorrelationNotFoundError, JobNotFoundError, JobTriggerError
from autolister.models.correlation import FeedbackRequest, StartJobRequest, WorkerTriggerRequest
from autolister.models_sqlalchemy import get_db
from autolister.models_sqlalchemy.models import CorrelationJob
from autolister.services.auth import AuthenticatedUser, get_current_user
from autolister.services.correlation_feedback import clear_decision, record_decision
from autolister.services.correlation_jobs import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    JobTrigger,
    get_job_status,
    get_job_trigger,
    list_jobs,
    start_job,
)
from autolister.utils.logger import logger
from autolister.workers.correlation_worker import run_correlation_job


router = APIRouter(prefix="/api/correlation", tags=["correlation"])


def get_trigger() -> JobTrigger:
    return get_job_trigger()


@router.post("/jobs")
async def start_correlation_job(
    payload: StartJobRequest,
    db: Session = Depends(get_db),
    trigger: JobTrigger = Depends(get_trigger),
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> Dict[str, Any]:
    try:
        result = await start_job(db, current_user.id, payload.asin, trigger=trigger)
    except JobTriggerError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "worker_trigger_failed", "message": str(exc), "jobId": exc.job_id},
        )

    body = result.as_dict()
    body["message"] = (
        "Job already in progress" if result.already_running else "Job started; poll status for progress"
    )
    return body


@router.get("/jobs/{job_id}")
async def correlation_job_status(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> Dict[str, Any]:
    try:
        return get_job_status(db, job_id, current_user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")


@router.get("/jobs")
async def list_correlation_jobs(
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> Dict[str, Any]:
    return {"jobs": list_jobs(db, current_user.id, limit)}


@router.post("/worker", status_code=status.HTTP_202_ACCEPTED)
async def correlation_worker_entry(
    payload: WorkerTriggerRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    x_webhook_secret: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Internal entry point the HTTP trigger calls; returns before the job runs."""
    expected = settings.WEBHOOK_SECRET
    if not expected or not hmac.compare_digest(x_webhook_secret or "", expected):
        logger.warning("[correlation] worker call rejected: bad or missing webhook secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    job = db.get(CorrelationJob, payload.jobId)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.status != "pending":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "job_not_pending", "status": job.status},
        )

    background_tasks.add_task(run_correlation_job, job.id)
    return {"accepted": True, "jobId": job.id}


@router.post("/feedback")
async def correlation_feedback(
    payload: FeedbackRequest,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> Dict[str, Any]:
    try:
        if payload.action == "clear":
            row = clear_decision(db, current_user.id, payload.searchAsin, payload.candidateAsin)
        else:
            decision = "accepted" if payload.action == "accept" else "declined"
            row = record_decision(
                db, current_user.id, payload.searchAsin, payload.candidateAsin, decision, payload.reason,
            )
    except CorrelationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {"success": True, "correlation": row}
