from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from autolister.errors import InvalidJobTransitionError, JobNotFoundError, JobTriggerError
from autolister.models_sqlalchemy.models import CorrelationJob, CorrelationResult
from autolister.services import correlation_jobs
from autolister.services.correlation_jobs import (
    find_stale_jobs,
    get_job_status,
    list_jobs,
    start_job,
    transition_job,
)


class RecordingTrigger:
    def __init__(self, error=None):
        self.error = error
        self.triggered = []

    async def trigger(self, job):
        self.triggered.append(job.id)
        if self.error is not None:
            raise JobTriggerError(job.id, self.error)


def _job(db, user_id="user-1", key="B0TEST0001", status="pending", **fields):
    job = CorrelationJob(user_id=user_id, search_key=key, status=status, **fields)
    db.add(job)
    db.commit()
    return job


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "current,new",
    [("pending", "processing"), ("pending", "error"), ("processing", "complete"), ("processing", "error")],
)
def test_allowed_transitions(current, new):
    job = CorrelationJob(id="job-1", user_id="u", search_key="B0TEST0001", status=current)

    assert transition_job(job, new) == current
    assert job.status == new


@pytest.mark.parametrize(
    "current,new",
    [
        ("pending", "complete"),
        ("processing", "pending"),
        ("complete", "processing"),
        ("complete", "error"),
        ("error", "pending"),
        ("error", "processing"),
    ],
)
def test_rejected_transitions(current, new):
    job = CorrelationJob(id="job-1", user_id="u", search_key="B0TEST0001", status=current)

    with pytest.raises(InvalidJobTransitionError):
        transition_job(job, new)
    assert job.status == current


def test_terminal_transition_stamps_completed_at():
    job = CorrelationJob(id="job-1", user_id="u", search_key="B0TEST0001", status="processing")

    transition_job(job, "complete", approved_count=3)

    assert job.completed_at is not None
    assert job.approved_count == 3


# ---------------------------------------------------------------------------
# Start / dedup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_job_creates_pending_job_and_triggers_worker(db_session):
    trigger = RecordingTrigger()

    result = await start_job(db_session, "user-1", " b0test0001 ", trigger=trigger)

    assert result.as_dict() == {"jobId": result.job.id, "status": "pending", "alreadyRunning": False}
    assert result.job.search_key == "B0TEST0001"
    assert trigger.triggered == [result.job.id]


@pytest.mark.asyncio
async def test_start_job_returns_active_job_for_same_key(db_session):
    trigger = RecordingTrigger()
    first = await start_job(db_session, "user-1", "B0TEST0001", trigger=trigger)

    second = await start_job(db_session, "user-1", "B0TEST0001", trigger=trigger)

    assert second.already_running
    assert second.job.id == first.job.id
    assert trigger.triggered == [first.job.id]
    assert db_session.query(CorrelationJob).count() == 1


@pytest.mark.asyncio
async def test_start_job_allows_new_job_after_previous_finished(db_session):
    done = _job(db_session, status="complete")

    result = await start_job(db_session, "user-1", "B0TEST0001", trigger=RecordingTrigger())

    assert not result.already_running
    assert result.job.id != done.id


@pytest.mark.asyncio
async def test_start_job_is_per_user(db_session):
    other = _job(db_session, user_id="user-2")

    result = await start_job(db_session, "user-1", "B0TEST0001", trigger=RecordingTrigger())

    assert not result.already_running
    assert result.job.id != other.id


def test_second_active_job_for_same_key_violates_index(db_session):
    _job(db_session, status="processing")

    with pytest.raises(IntegrityError):
        _job(db_session, status="pending")
    db_session.rollback()

    # Finished jobs are outside the index.
    _job(db_session, status="error")
    _job(db_session, status="complete")


@pytest.mark.asyncio
async def test_concurrent_start_collapses_to_existing_job(db_session, monkeypatch):
    winner = _job(db_session)
    real_find = correlation_jobs.find_active_job
    calls = []

    def stale_first_read(db, user_id, search_key):
        calls.append(search_key)
        # The first read happens before the competing insert became visible.
        if len(calls) == 1:
            return None
        return real_find(db, user_id, search_key)

    monkeypatch.setattr(correlation_jobs, "find_active_job", stale_first_read)
    trigger = RecordingTrigger()

    result = await start_job(db_session, "user-1", "B0TEST0001", trigger=trigger)

    assert result.already_running
    assert result.job.id == winner.id
    assert trigger.triggered == []
    assert db_session.query(CorrelationJob).count() == 1


@pytest.mark.asyncio
async def test_trigger_failure_marks_job_error(db_session):
    trigger = RecordingTrigger(error="connection refused")

    with pytest.raises(JobTriggerError) as exc_info:
        await start_job(db_session, "user-1", "B0TEST0001", trigger=trigger)

    job = db_session.get(CorrelationJob, exc_info.value.job_id)
    assert job.status == "error"
    assert "connection refused" in job.error_message
    assert job.completed_at is not None

    # The failed job no longer blocks a new attempt.
    retry = await start_job(db_session, "user-1", "B0TEST0001", trigger=RecordingTrigger())
    assert not retry.already_running


@pytest.mark.asyncio
async def test_inline_trigger_schedules_runner(db_session):
    ran = []

    async def runner(job_id):
        ran.append(job_id)

    trigger = correlation_jobs.InlineJobTrigger(runner)
    result = await start_job(db_session, "user-1", "B0TEST0001", trigger=trigger)
    # Let the scheduled task run.
    for task in list(trigger._tasks):
        await task

    assert ran == [result.job.id]


def test_inline_trigger_is_shared_across_requests(monkeypatch):
    monkeypatch.setattr(correlation_jobs.settings, "CORRELATION_TRIGGER_MODE", "inline")

    first = correlation_jobs.get_job_trigger()

    assert first is correlation_jobs.get_job_trigger()
    assert isinstance(first, correlation_jobs.InlineJobTrigger)


@pytest.mark.asyncio
async def test_http_trigger_without_url_fails(db_session):
    trigger = correlation_jobs.HttpJobTrigger(secret="s")
    trigger.url = ""

    with pytest.raises(JobTriggerError):
        await start_job(db_session, "user-1", "B0TEST0001", trigger=trigger)


# ---------------------------------------------------------------------------
# Status / listing
# ---------------------------------------------------------------------------


def test_status_is_scoped_to_owner(db_session):
    job = _job(db_session, user_id="user-1")

    with pytest.raises(JobNotFoundError):
        get_job_status(db_session, job.id, "user-2")
    with pytest.raises(JobNotFoundError):
        get_job_status(db_session, "missing", "user-1")


def test_status_of_running_job_has_no_correlations(db_session):
    job = _job(db_session, status="processing", total_count=8, processed_count=5)

    data = get_job_status(db_session, job.id, "user-1")

    assert data["status"] == "processing"
    assert data["totalCount"] == 8
    assert data["processedCount"] == 5
    assert "correlations" not in data


def test_status_of_complete_job_includes_correlations(db_session):
    job = _job(db_session, status="complete", approved_count=1)
    db_session.add(CorrelationResult(
        user_id="user-1", search_key="B0TEST0001", candidate_key="B0TEST0002",
        candidate_title="Acme Headphones White", source="variation",
    ))
    db_session.add(CorrelationResult(
        user_id="user-2", search_key="B0TEST0001", candidate_key="B0TEST0003", source="similar",
    ))
    db_session.commit()

    data = get_job_status(db_session, job.id, "user-1")

    assert [c["asin"] for c in data["correlations"]] == ["B0TEST0002"]
    assert data["correlations"][0]["suggestedType"] == "variation"
    assert data["correlations"][0]["decision"] is None


def test_list_jobs_newest_first_with_limit(db_session):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i in range(4):
        _job(db_session, key=f"B0TEST000{i}", status="complete", created_at=base + timedelta(minutes=i))
    _job(db_session, user_id="user-2", key="B0TEST0009")

    jobs = list_jobs(db_session, "user-1", limit=3)

    assert [j["searchKey"] for j in jobs] == ["B0TEST0003", "B0TEST0002", "B0TEST0001"]


def test_list_jobs_limit_is_clamped(db_session):
    for i in range(12):
        _job(db_session, key=f"B0TEST{i:04d}", status="complete")

    assert len(list_jobs(db_session, "user-1")) == 10
    assert len(list_jobs(db_session, "user-1", limit=500)) == 12


def test_find_stale_jobs_reports_old_processing_jobs(db_session):
    old = datetime.now(timezone.utc) - timedelta(minutes=45)
    stale = _job(db_session, key="B0TEST0001", status="processing", updated_at=old)
    _job(db_session, key="B0TEST0002", status="processing")
    _job(db_session, key="B0TEST0003", status="pending", updated_at=old)

    found = find_stale_jobs(db_session, older_than_minutes=30)

    assert [j.id for j in found] == [stale.id]
