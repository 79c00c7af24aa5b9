from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from autolister.models_sqlalchemy import SessionLocal
from autolister.services.correlation_jobs import find_stale_jobs
from autolister.services.correlation_processor import process_job
from autolister.utils.logger import logger

STALE_CHECK_INTERVAL_SECONDS = 300


async def run_correlation_job(job_id: str, db: Optional[Session] = None) -> Dict[str, Any]:
    """Process one correlation job, opening a session when none is passed in."""

    owns_session = False
    if db is None:
        db = SessionLocal()
        owns_session = True

    try:
        return await process_job(db, job_id)
    finally:
        if owns_session:
            db.close()


def report_stale_jobs(db: Session) -> int:
    stale = find_stale_jobs(db)
    for job in stale:
        logger.warning(
            "[correlation] job %s stuck in processing since %s (user=%s key=%s processed=%s/%s)",
            job.id,
            job.updated_at,
            job.user_id,
            job.search_key,
            job.processed_count,
            job.total_count,
        )
    return len(stale)


async def run_stale_job_monitor_loop():
    """Log correlation jobs stuck in ``processing``. Never changes their state."""
    logger.info("Correlation stale-job monitor started (every %s seconds)", STALE_CHECK_INTERVAL_SECONDS)

    while True:
        db = SessionLocal()
        try:
            count = report_stale_jobs(db)
            if count:
                logger.warning(f"Stale correlation jobs detected: {count}")
        except Exception as e:
            logger.error(f"Stale job monitor error: {str(e)}")
        finally:
            db.close()

        await asyncio.sleep(STALE_CHECK_INTERVAL_SECONDS)


if __name__ == "__main__":
    asyncio.run(run_stale_job_monitor_loop())
