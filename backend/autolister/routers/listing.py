from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from autolister.errors import (
    EbayAuthError,
    ListingStepError,
    ListingValidationError,
    NonLeafCategoryError,
    ProductNotFoundError,
    ProductProviderError,
)
from autolister.models.listing import AutoListRequest, AutoListResponse
from autolister.models_sqlalchemy import get_db
from autolister.services.auth import AuthenticatedUser, get_current_user
from autolister.services.listing_service import ListingPipeline
from autolister.utils.logger import logger


router = APIRouter(prefix="/api/listing", tags=["listing"])


def get_listing_pipeline(db: Session = Depends(get_db)) -> ListingPipeline:
    return ListingPipeline(db)


@router.post("/auto-list", response_model=AutoListResponse)
async def auto_list(
    payload: AutoListRequest,
    pipeline: ListingPipeline = Depends(get_listing_pipeline),
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> AutoListResponse:
    """Resolve category and aspects for an ASIN, then create and publish the listing.

    With ``publish=false`` the inventory item and offer are created and left
    unpublished. Any failure after the inventory item exists is rolled back
    before the error is returned.
    """
    logger.info(
        "[listing] auto-list user=%s asin=%s price=%s qty=%s condition=%s publish=%s",
        current_user.id, payload.asin, payload.price, payload.quantity, payload.condition, payload.publish,
    )
    try:
        outcome = await pipeline.run(
            payload.asin,
            payload.price,
            quantity=payload.quantity,
            condition=payload.condition,
            publish=payload.publish,
        )
    except ListingValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail())
    except NonLeafCategoryError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "non_leaf_category", "message": str(exc), "categoryId": exc.category_id},
        )
    except ProductNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "product_not_found", "message": str(exc)},
        )
    except ProductProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "product_provider_error", "message": str(exc)},
        )
    except EbayAuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "ebay_auth_unavailable", "message": str(exc)},
        )
    except ListingStepError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_detail())
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Auto-list failed for %s: %s", payload.asin, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auto-list failed; see server logs for details.",
        ) from exc

    return AutoListResponse(**outcome.as_dict())
