from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autolister.config import settings
from autolister.errors import InvalidJobTransitionError, JobNotFoundError, JobTriggerError
from autolister.models_sqlalchemy.models import ACTIVE_JOB_STATUSES, CorrelationJob, CorrelationResult
from autolister.utils.logger import logger


DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 50

JOB_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"processing", "error"},
    "processing": {"complete", "error"},
    "complete": set(),
    "error": set(),
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def transition_job(job: CorrelationJob, new_status: str, **fields: Any) -> str:
    """Validate and apply a job status change. Returns the old status.

    Extra keyword arguments are assigned to the job alongside the status
    (counters, ``error_message``...). Terminal statuses stamp
    ``completed_at``.
    """
    old_status = job.status
    if new_status not in JOB_TRANSITIONS.get(old_status, set()):
        raise InvalidJobTransitionError(job.id, old_status, new_status)

    job.status = new_status
    for name, value in fields.items():
        setattr(job, name, value)
    if new_status in ("complete", "error") and job.completed_at is None:
        job.completed_at = _now_utc()
    return old_status


def job_to_dict(job: CorrelationJob) -> Dict[str, Any]:
    return {
        "jobId": job.id,
        "searchKey": job.search_key,
        "status": job.status,
        "totalCount": job.total_count or 0,
        "processedCount": job.processed_count or 0,
        "approvedCount": job.approved_count or 0,
        "rejectedCount": job.rejected_count or 0,
        "errorMessage": job.error_message,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


def correlation_to_dict(row: CorrelationResult) -> Dict[str, Any]:
    return {
        "asin": row.candidate_key,
        "title": row.candidate_title,
        "imageUrl": row.image_url,
        "searchImageUrl": row.search_image_url,
        "suggestedType": row.source,
        "url": row.candidate_url,
        "decision": row.decision,
        "declineReason": row.decline_reason,
        "decisionAt": row.decision_at.isoformat() if row.decision_at else None,
    }


# ---------------------------------------------------------------------------
# Worker handoff
# ---------------------------------------------------------------------------


class JobTrigger:
    """Hands a freshly created job to the background worker.

    ``trigger`` must return once the worker has accepted the job and raise
    ``JobTriggerError`` when it could not be handed off.
    """

    async def trigger(self, job: CorrelationJob) -> None:
        raise NotImplementedError


class HttpJobTrigger(JobTrigger):
    """POST the job id to the worker endpoint, which replies 202 and runs it."""

    def __init__(self, url: Optional[str] = None, secret: Optional[str] = None, timeout: float = 10.0):
        self.url = url or settings.CORRELATION_WORKER_URL
        self.secret = secret or settings.WEBHOOK_SECRET
        self.timeout = timeout

    async def trigger(self, job: CorrelationJob) -> None:
        if not self.url:
            raise JobTriggerError(job.id, "CORRELATION_WORKER_URL is not configured")

        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json={"jobId": job.id}, headers=headers)
        except httpx.RequestError as exc:
            raise JobTriggerError(job.id, f"Worker trigger request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise JobTriggerError(
                job.id,
                f"Worker trigger returned HTTP {resp.status_code}: {resp.text[:500]}",
            )


class InlineJobTrigger(JobTrigger):
    """Schedule the worker on the running event loop of this process."""

    def __init__(self, runner: Optional[Callable[[str], Awaitable[Any]]] = None):
        self._runner = runner
        self._tasks: Set[asyncio.Task] = set()

    async def trigger(self, job: CorrelationJob) -> None:
        runner = self._runner
        if runner is None:
            from autolister.workers.correlation_worker import run_correlation_job

            runner = run_correlation_job
        try:
            task = asyncio.get_running_loop().create_task(runner(job.id))
        except RuntimeError as exc:
            raise JobTriggerError(job.id, f"Could not schedule worker: {exc}") from exc
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


# Shared so scheduled tasks stay referenced after the request that started them.
inline_job_trigger = InlineJobTrigger()


def get_job_trigger() -> JobTrigger:
    if settings.CORRELATION_TRIGGER_MODE == "inline":
        return inline_job_trigger
    return HttpJobTrigger()


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass
class StartResult:
    job: CorrelationJob
    already_running: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job.id,
            "status": self.job.status,
            "alreadyRunning": self.already_running,
        }


def find_active_job(db: Session, user_id: str, search_key: str) -> Optional[CorrelationJob]:
    return (
        db.query(CorrelationJob)
        .filter(
            CorrelationJob.user_id == user_id,
            CorrelationJob.search_key == search_key,
            CorrelationJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(CorrelationJob.created_at.desc())
        .first()
    )


async def start_job(
    db: Session,
    user_id: str,
    search_key: str,
    *,
    trigger: Optional[JobTrigger] = None,
) -> StartResult:
    """Create a correlation job unless one is already active for the pair."""
    search_key = search_key.strip().upper()

    existing = find_active_job(db, user_id, search_key)
    if existing is not None:
        logger.info(
            "[correlation] job already running user=%s key=%s job=%s",
            user_id, search_key, existing.id,
        )
        return StartResult(existing, already_running=True)

    job = CorrelationJob(user_id=user_id, search_key=search_key, status="pending")
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent start; the partial unique index
        # rejected the second active job.
        db.rollback()
        existing = find_active_job(db, user_id, search_key)
        if existing is None:
            raise
        logger.info(
            "[correlation] concurrent start collapsed user=%s key=%s job=%s",
            user_id, search_key, existing.id,
        )
        return StartResult(existing, already_running=True)
    db.refresh(job)
    logger.info("[correlation] created job %s user=%s key=%s", job.id, user_id, search_key)

    trigger = trigger or get_job_trigger()
    try:
        await trigger.trigger(job)
    except JobTriggerError as exc:
        logger.error("[correlation] trigger failed for job %s: %s", job.id, exc)
        current = db.get(CorrelationJob, job.id)
        # The worker may have picked the job up before the trigger reported
        # failure; only flip it if it is still waiting.
        if current is not None and current.status == "pending":
            transition_job(current, "error", error_message=f"Failed to start background worker: {exc}"[:2000])
            db.commit()
        raise

    return StartResult(job, already_running=False)


def get_job_status(db: Session, job_id: str, user_id: str) -> Dict[str, Any]:
    job = (
        db.query(CorrelationJob)
        .filter(CorrelationJob.id == job_id, CorrelationJob.user_id == user_id)
        .first()
    )
    if job is None:
        raise JobNotFoundError(job_id)

    data = job_to_dict(job)
    if job.status == "complete":
        rows = (
            db.query(CorrelationResult)
            .filter(
                CorrelationResult.user_id == user_id,
                CorrelationResult.search_key == job.search_key,
            )
            .order_by(CorrelationResult.id.asc())
            .all()
        )
        data["correlations"] = [correlation_to_dict(r) for r in rows]
    return data


def list_jobs(db: Session, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    limit = DEFAULT_LIST_LIMIT if not limit or limit < 1 else min(limit, MAX_LIST_LIMIT)
    jobs = (
        db.query(CorrelationJob)
        .filter(CorrelationJob.user_id == user_id)
        .order_by(CorrelationJob.created_at.desc(), CorrelationJob.id.desc())
        .limit(limit)
        .all()
    )
    return [job_to_dict(j) for j in jobs]


def find_stale_jobs(db: Session, older_than_minutes: Optional[int] = None) -> List[CorrelationJob]:
    """Jobs still ``processing`` with no progress write for too long.

    Nothing is retried or failed automatically; callers report them.
    """
    minutes = older_than_minutes or settings.CORRELATION_JOB_STALE_MINUTES
    cutoff = _now_utc() - timedelta(minutes=minutes)
    return (
        db.query(CorrelationJob)
        .filter(CorrelationJob.status == "processing", CorrelationJob.updated_at < cutoff)
        .order_by(CorrelationJob.updated_at.asc())
        .all()
    )
