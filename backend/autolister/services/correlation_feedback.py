from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from autolister.errors import CorrelationNotFoundError
from autolister.models_sqlalchemy.models import CorrelationResult
from autolister.services.correlation_jobs import correlation_to_dict
from autolister.utils.logger import logger

DECISIONS = ("accepted", "declined")


def _get_result(db: Session, user_id: str, search_key: str, candidate_key: str) -> CorrelationResult:
    row = (
        db.query(CorrelationResult)
        .filter(
            CorrelationResult.user_id == user_id,
            CorrelationResult.search_key == search_key.upper(),
            CorrelationResult.candidate_key == candidate_key.upper(),
        )
        .first()
    )
    if row is None:
        raise CorrelationNotFoundError(f"Correlation {search_key} -> {candidate_key} not found")
    return row


def record_decision(
    db: Session,
    user_id: str,
    search_key: str,
    candidate_key: str,
    decision: str,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    if decision not in DECISIONS:
        raise ValueError(f"decision must be one of {', '.join(DECISIONS)}")

    row = _get_result(db, user_id, search_key, candidate_key)
    row.decision = decision
    row.decline_reason = reason if decision == "declined" else None
    row.decision_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("[correlation] %s %s -> %s by user=%s", decision, search_key, candidate_key, user_id)
    return correlation_to_dict(row)


def clear_decision(db: Session, user_id: str, search_key: str, candidate_key: str) -> Dict[str, Any]:
    row = _get_result(db, user_id, search_key, candidate_key)
    row.decision = None
    row.decline_reason = None
    row.decision_at = None
    db.commit()
    return correlation_to_dict(row)
