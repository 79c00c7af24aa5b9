"""
Aspect Review Worker

Runs the aspect learning batch on a fixed interval, independent of listing
requests. Overlapping runs are harmless: duplicate pattern inserts are
ignored and a miss only leaves ``pending`` once.
"""
import asyncio
from typing import Any, Dict

from autolister.config import settings
from autolister.models_sqlalchemy import SessionLocal
from autolister.services.aspect_learning import review_pending
from autolister.utils.logger import logger


async def run_aspect_review_once() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        summary = await review_pending(db, settings.ASPECT_REVIEW_BATCH_SIZE)
        return summary.as_dict()
    finally:
        db.close()


async def run_aspect_review_loop():
    interval = settings.ASPECT_REVIEW_INTERVAL_SECONDS
    logger.info(f"Aspect review worker loop started (every {interval} seconds)")

    while True:
        try:
            result = await run_aspect_review_once()
            logger.info(f"Aspect review cycle completed: {result}")
        except Exception as e:
            logger.error(f"Aspect review worker loop error: {str(e)}")

        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(run_aspect_review_loop())
