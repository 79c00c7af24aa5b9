from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, validator


class AutoListRequest(BaseModel):
    """Request body for POST /api/listing/auto-list."""

    asin: str = Field(..., description="Amazon ASIN of the product to list")
    price: Decimal = Field(..., description="Listing price in the marketplace currency")
    quantity: int = Field(1)
    condition: str = Field("NEW", description="eBay condition enum or a short alias (GOOD, USED...)")
    publish: bool = Field(True, description="False creates the offer without publishing it")

    @validator("asin")
    def normalize_asin(cls, v: str) -> str:
        v_norm = (v or "").strip().upper()
        if not v_norm:
            raise ValueError("asin is required")
        return v_norm


class CategoryInfo(BaseModel):
    id: str
    name: str
    matchType: str


class AutoListResponse(BaseModel):
    sku: str
    offerId: str
    listingId: Optional[str] = None
    listingUrl: Optional[str] = None
    published: bool
    category: CategoryInfo
    aspects: Dict[str, List[str]] = Field(default_factory=dict)
    missingAspects: List[str] = Field(default_factory=list)
