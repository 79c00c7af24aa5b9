"""Batch review of aspect misses.

Each pending miss is sent to the inference service, which proposes a value
and a keyword pattern. Only high-confidence, valid proposals become rows in
``ebay_aspect_keywords``; everything else is parked as ``review_needed`` with
the suggestion attached. A bad reply never aborts the batch.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autolister.config import settings
from autolister.errors import InferenceError
from autolister.models_sqlalchemy.models import AspectKeyword, AspectMiss, CategoryAspectRequirement
from autolister.services.ai_inference import (
    ASPECT_SYSTEM_PROMPT,
    AspectInference,
    Confidence,
    InferenceClient,
    build_aspect_prompt,
    inference_client,
    parse_aspect_inference,
)
from autolister.utils.logger import logger

# Pause between inference calls so a full batch does not hit provider rate limits.
ITEM_DELAY_SECONDS = 0.2


@dataclass
class ReviewSummary:
    processed: int = 0
    review_needed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "reviewNeeded": self.review_needed,
            "skipped": self.skipped,
        }


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _requirement_for(db: Session, miss: AspectMiss) -> Optional[CategoryAspectRequirement]:
    if not miss.category_id:
        return None
    return (
        db.query(CategoryAspectRequirement)
        .filter(
            CategoryAspectRequirement.category_id == miss.category_id,
            CategoryAspectRequirement.aspect_name == miss.aspect_name,
        )
        .first()
    )


def _normalize_selection(value: str, allowed: List[str]) -> Optional[str]:
    lowered = value.strip().lower()
    for candidate in allowed:
        if candidate.lower() == lowered:
            return candidate
    return None


def insert_keyword_pattern(
    db: Session,
    *,
    aspect_name: str,
    keyword_pattern: str,
    aspect_value: str,
    category_id: Optional[str],
) -> bool:
    """Insert a keyword pattern; return False when an equal row already exists.

    Equality is on (aspect, pattern, category) with NULL category treated as
    its own value. The first writer wins and the row is never updated. The
    caller's pending changes are committed together with the new row.
    """
    exists = (
        db.query(AspectKeyword.id)
        .filter(
            AspectKeyword.aspect_name == aspect_name,
            AspectKeyword.keyword_pattern == keyword_pattern,
            func.coalesce(AspectKeyword.category_id, "") == (category_id or ""),
        )
        .first()
    )
    if exists:
        return False

    db.add(
        AspectKeyword(
            aspect_name=aspect_name,
            keyword_pattern=keyword_pattern,
            aspect_value=aspect_value,
            category_id=category_id,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        # A concurrent review inserted the same pattern between our check
        # and the flush.
        db.rollback()
        return False
    return True


def _mark_review_needed(miss: AspectMiss, note: str, suggestion: Optional[AspectInference] = None) -> None:
    miss.status = "review_needed"
    miss.notes = note
    miss.reviewed_at = _now_utc()
    if suggestion is not None:
        miss.suggested_value = suggestion.aspect_value
        miss.suggested_pattern = suggestion.keyword_pattern


def _defer(miss: AspectMiss, note: str, max_attempts: int) -> bool:
    """Keep a miss pending after a failed attempt. Returns True once it gives up."""
    miss.attempts = (miss.attempts or 0) + 1
    if miss.attempts >= max_attempts:
        _mark_review_needed(miss, f"{note} (gave up after {miss.attempts} attempts)")
        return True
    miss.notes = note
    return False


async def review_miss(
    db: Session,
    miss: AspectMiss,
    client: InferenceClient,
    *,
    max_attempts: int,
) -> str:
    """Review one miss and return its resulting status."""
    requirement = _requirement_for(db, miss)
    allowed: List[str] = []
    selection_only = False
    if requirement is not None:
        selection_only = requirement.aspect_mode == "SELECTION_ONLY"
        allowed = list(requirement.allowed_values or [])

    prompt = build_aspect_prompt(
        aspect_name=miss.aspect_name,
        product_title=miss.product_title or "",
        category_name=miss.category_name,
        brand=miss.keepa_brand,
        model=miss.keepa_model,
        allowed_values=allowed if selection_only else None,
    )

    try:
        content = await client.complete(prompt, system=ASPECT_SYSTEM_PROMPT)
    except InferenceError as exc:
        gave_up = _defer(miss, f"Inference failed: {exc}", max_attempts)
        db.commit()
        return "review_needed" if gave_up else "pending"

    suggestion = parse_aspect_inference(content)
    if suggestion is None:
        logger.warning("[aspect-review] miss %s: unparseable response %r", miss.id, (content or "")[:300])
        gave_up = _defer(miss, "AI response could not be parsed", max_attempts)
        db.commit()
        return "review_needed" if gave_up else "pending"

    if selection_only and allowed:
        normalized = _normalize_selection(suggestion.aspect_value, allowed)
        if normalized is None:
            _mark_review_needed(
                miss,
                f'Value "{suggestion.aspect_value}" is not one of the allowed values for {miss.aspect_name}',
                suggestion,
            )
            db.commit()
            return "review_needed"
        suggestion.aspect_value = normalized

    if suggestion.confidence is Confidence.HIGH:
        return _promote(db, miss, suggestion)
    elif suggestion.confidence in (Confidence.MEDIUM, Confidence.LOW):
        _mark_review_needed(
            miss,
            f"{suggestion.confidence.value.capitalize()} confidence - needs manual review",
            suggestion,
        )
        db.commit()
        return "review_needed"
    raise AssertionError(f"unhandled confidence {suggestion.confidence!r}")


def _promote(db: Session, miss: AspectMiss, suggestion: AspectInference) -> str:
    pattern = suggestion.keyword_pattern
    if not pattern:
        _mark_review_needed(miss, "High confidence but no keyword pattern suggested", suggestion)
        db.commit()
        return "review_needed"
    try:
        re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        _mark_review_needed(miss, f"Suggested pattern is not a valid regex: {exc}", suggestion)
        db.commit()
        return "review_needed"

    miss_id = miss.id
    inserted = insert_keyword_pattern(
        db,
        aspect_name=miss.aspect_name,
        keyword_pattern=pattern,
        aspect_value=suggestion.aspect_value,
        category_id=miss.category_id,
    )
    if not inserted:
        # The rollback above may have expired the instance; reload it.
        miss = db.get(AspectMiss, miss_id)

    miss.status = "processed"
    miss.suggested_value = suggestion.aspect_value
    miss.suggested_pattern = pattern
    miss.reviewed_at = _now_utc()
    miss.notes = None if inserted else "Pattern already existed"
    db.commit()
    logger.info(
        "[aspect-review] learned %s /%s/ -> %s (category=%s, new=%s)",
        miss.aspect_name,
        pattern,
        suggestion.aspect_value,
        miss.category_id or "*",
        inserted,
    )
    return "processed"


async def review_pending(
    db: Session,
    limit: Optional[int] = None,
    *,
    client: Optional[InferenceClient] = None,
    max_attempts: Optional[int] = None,
    item_delay: float = ITEM_DELAY_SECONDS,
) -> ReviewSummary:
    """Review up to ``limit`` pending misses, oldest first."""
    limit = settings.ASPECT_REVIEW_BATCH_SIZE if limit is None else limit
    max_attempts = max_attempts or settings.ASPECT_REVIEW_MAX_ATTEMPTS
    client = client or inference_client

    misses = (
        db.query(AspectMiss)
        .filter(AspectMiss.status == "pending")
        .order_by(AspectMiss.created_at.asc(), AspectMiss.id.asc())
        .limit(limit)
        .all()
    )
    summary = ReviewSummary()
    if not misses:
        return summary

    logger.info("[aspect-review] reviewing %d pending misses", len(misses))
    miss_ids = [m.id for m in misses]

    for index, miss_id in enumerate(miss_ids):
        miss = db.get(AspectMiss, miss_id)
        if miss is None or miss.status != "pending":
            summary.skipped += 1
            continue
        try:
            outcome = await review_miss(db, miss, client, max_attempts=max_attempts)
        except Exception as exc:
            logger.exception("[aspect-review] miss %s failed", miss_id)
            db.rollback()
            miss = db.get(AspectMiss, miss_id)
            if miss is not None:
                _defer(miss, f"Error: {exc}", max_attempts)
                db.commit()
            summary.skipped += 1
            continue

        if outcome == "processed":
            summary.processed += 1
        elif outcome == "review_needed":
            summary.review_needed += 1
        else:
            summary.skipped += 1

        if item_delay and index < len(miss_ids) - 1:
            await asyncio.sleep(item_delay)

    logger.info("[aspect-review] batch done %s", summary.as_dict())
    return summary
