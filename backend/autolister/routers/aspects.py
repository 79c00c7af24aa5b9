from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from autolister.errors import EbayAuthError
from autolister.models_sqlalchemy import get_db
from autolister.models_sqlalchemy.models import AspectMiss
from autolister.services.aspect_learning import review_pending
from autolister.services.aspect_resolver import sync_requirements
from autolister.services.auth import AuthenticatedUser, admin_required
from autolister.services.ebay_api_client import TaxonomyApiError


router = APIRouter(prefix="/api/admin/aspects", tags=["admin_aspects"])


@router.post("/review")
async def run_aspect_review(
    limit: Optional[int] = Query(None, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(admin_required),
) -> Dict[str, Any]:
    """Run one learning batch now instead of waiting for the scheduled loop."""
    summary = await review_pending(db, limit)
    return summary.as_dict()


@router.get("/misses")
async def list_aspect_misses(
    status_filter: str = Query("review_needed", alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(admin_required),
) -> Dict[str, Any]:
    rows = (
        db.query(AspectMiss)
        .filter(AspectMiss.status == status_filter)
        .order_by(AspectMiss.created_at.desc())
        .limit(limit)
        .all()
    )
    return {
        "misses": [
            {
                "id": m.id,
                "asin": m.asin,
                "categoryId": m.category_id,
                "categoryName": m.category_name,
                "aspectName": m.aspect_name,
                "productTitle": m.product_title,
                "status": m.status,
                "suggestedValue": m.suggested_value,
                "suggestedPattern": m.suggested_pattern,
                "notes": m.notes,
            }
            for m in rows
        ]
    }


@router.post("/{category_id}/resync")
async def resync_category_aspects(
    category_id: str,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(admin_required),
) -> Dict[str, Any]:
    try:
        rows = await sync_requirements(db, category_id)
    except (TaxonomyApiError, EbayAuthError) as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "taxonomy_unavailable", "message": str(exc)},
        )
    return {
        "categoryId": category_id,
        "aspects": [
            {"name": r.aspect_name, "required": r.required, "mode": r.aspect_mode}
            for r in rows
        ],
    }
