"""Correlation discovery for a single job.

Candidates are the primary product's variations (always approved) followed by
same-brand products from the same root category, which are approved only when
the inference service says they are the same kind of product. Approved
candidates are upserted into ``asin_correlations``; the job row carries the
progress counters the status endpoint reports.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from autolister.errors import InferenceError, JobNotFoundError, ProductNotFoundError, ProductProviderError
from autolister.models_sqlalchemy.models import CorrelationJob, CorrelationResult
from autolister.services.ai_inference import InferenceClient, build_same_product_prompt, inference_client
from autolister.services.correlation_jobs import job_to_dict, transition_job
from autolister.services.keepa_client import KeepaClient, ProductData, keepa_client
from autolister.utils.logger import logger

PROGRESS_EVERY = 5
MAX_SIMILAR_CANDIDATES = 30

SOURCE_VARIATION = "variation"
SOURCE_SIMILAR = "similar"


@dataclass
class Candidate:
    product: ProductData
    source: str


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def collect_candidates(provider: KeepaClient, primary: ProductData) -> List[Candidate]:
    seen = {primary.asin}
    candidates: List[Candidate] = []

    variation_asins = [a for a in primary.variation_asins if a not in seen]
    if variation_asins:
        for product in await provider.fetch_products(variation_asins):
            if product.asin in seen:
                continue
            seen.add(product.asin)
            candidates.append(Candidate(product, SOURCE_VARIATION))
    logger.info("[correlation] %s: %d variations", primary.asin, len(candidates))

    # Exclude the primary and every variation, including ones Keepa did not return.
    excluded = set(seen) | set(variation_asins)
    if primary.brand and primary.root_category:
        try:
            found = await provider.search_brand(primary.brand, primary.root_category)
        except ProductProviderError as exc:
            logger.warning("[correlation] %s: brand search failed, continuing with variations: %s", primary.asin, exc)
            found = []
        similar_asins = [a for a in found if a not in excluded][:MAX_SIMILAR_CANDIDATES]
        if similar_asins:
            try:
                similar = await provider.fetch_products(similar_asins)
            except ProductProviderError as exc:
                logger.warning("[correlation] %s: similar lookup failed: %s", primary.asin, exc)
                similar = []
            for product in similar:
                if product.asin in seen:
                    continue
                seen.add(product.asin)
                candidates.append(Candidate(product, SOURCE_SIMILAR))

    return candidates


async def is_same_product(inference: InferenceClient, primary: ProductData, candidate: ProductData) -> bool:
    prompt = build_same_product_prompt(
        primary.title, primary.brand, candidate.asin, candidate.title, candidate.brand,
    )
    try:
        answer = await inference.complete(prompt, max_tokens=10)
    except InferenceError as exc:
        logger.warning("[correlation] evaluation failed for %s, treating as NO: %s", candidate.asin, exc)
        return False
    return "YES" in (answer or "").strip().upper()


def upsert_result(db: Session, job: CorrelationJob, primary: ProductData, candidate: Candidate) -> CorrelationResult:
    """Insert or refresh a correlation row. An existing decision is kept."""
    row = (
        db.query(CorrelationResult)
        .filter(
            CorrelationResult.user_id == job.user_id,
            CorrelationResult.search_key == job.search_key,
            CorrelationResult.candidate_key == candidate.product.asin,
        )
        .first()
    )
    if row is None:
        row = CorrelationResult(
            user_id=job.user_id,
            search_key=job.search_key,
            candidate_key=candidate.product.asin,
        )
        db.add(row)
    row.candidate_title = candidate.product.title
    row.image_url = candidate.product.primary_image
    row.search_image_url = primary.primary_image
    row.candidate_url = candidate.product.amazon_url
    row.source = candidate.source
    return row


async def process_job(
    db: Session,
    job_id: str,
    *,
    provider: Optional[KeepaClient] = None,
    inference: Optional[InferenceClient] = None,
) -> Dict[str, Any]:
    provider = provider or keepa_client
    inference = inference or inference_client

    job = db.get(CorrelationJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status != "pending":
        logger.info("[correlation] job %s is %s, not processing again", job_id, job.status)
        return job_to_dict(job)

    transition_job(job, "processing")
    db.commit()
    logger.info("[correlation] job %s processing key=%s", job_id, job.search_key)

    processed = approved = rejected = 0
    try:
        try:
            primary = await provider.fetch_product(job.search_key)
        except ProductNotFoundError:
            transition_job(job, "error", error_message="Product not found on Amazon")
            db.commit()
            logger.warning("[correlation] job %s: product %s not found", job_id, job.search_key)
            return job_to_dict(job)

        candidates = await collect_candidates(provider, primary)
        job.total_count = len(candidates)
        db.commit()

        for index, candidate in enumerate(candidates, start=1):
            if candidate.source == SOURCE_VARIATION:
                accepted = True
            else:
                accepted = await is_same_product(inference, primary, candidate.product)

            if accepted:
                upsert_result(db, job, primary, candidate)
                approved += 1
            else:
                rejected += 1
            processed += 1

            if index % PROGRESS_EVERY == 0:
                job.processed_count = processed
                job.approved_count = approved
                job.rejected_count = rejected
                db.commit()

        transition_job(
            job,
            "complete",
            processed_count=processed,
            approved_count=approved,
            rejected_count=rejected,
        )
        db.commit()
        logger.info(
            "[correlation] job %s complete: %d candidates, %d approved, %d rejected",
            job_id, len(candidates), approved, rejected,
        )
    except Exception as exc:
        logger.exception("[correlation] job %s failed", job_id)
        db.rollback()
        job = db.get(CorrelationJob, job_id)
        if job is not None and job.status == "processing":
            transition_job(
                job,
                "error",
                error_message=str(exc)[:2000] or type(exc).__name__,
                processed_count=processed,
                approved_count=approved,
                rejected_count=rejected,
            )
            db.commit()
    return job_to_dict(job)
