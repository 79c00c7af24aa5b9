"""Thin eBay Commerce Taxonomy API client.

Only the two calls the listing pipeline needs are exposed: category
suggestions for a free-text title and the item aspects of a category. Both
raise ``TaxonomyApiError`` on transport, status or parsing problems so callers
can tell "eBay is down" apart from "eBay had nothing to suggest".
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from autolister.config import settings
from autolister.utils.logger import logger


class TaxonomyApiError(RuntimeError):
    pass


@dataclass
class TaxonomyCategorySuggestion:
    """Lightweight representation of a Taxonomy category suggestion."""

    id: str
    name: str
    path: str
    is_leaf: bool = True


@dataclass
class CategoryAspect:
    name: str
    required: bool
    mode: str = "FREE_TEXT"  # FREE_TEXT or SELECTION_ONLY
    values: List[str] = field(default_factory=list)


def _taxonomy_url(path: str) -> str:
    base = settings.ebay_api_base_url.rstrip("/")
    tree_id = settings.EBAY_CATEGORY_TREE_ID
    return f"{base}/commerce/taxonomy/v1/category_tree/{tree_id}/{path}"


async def _taxonomy_get(access_token: str, path: str, params: Dict[str, str]) -> Dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
        "Content-Type": "application/json",
        "X-EBAY-C-MARKETPLACE-ID": settings.EBAY_MARKETPLACE_ID,
    }
    url = _taxonomy_url(path)

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0)) as client:
            resp = await client.get(url, headers=headers, params=params)
    except httpx.RequestError as exc:
        logger.error("[taxonomy] %s request error: %s", path, exc)
        raise TaxonomyApiError(f"{path} request failed: {exc}") from exc

    if resp.status_code != 200:
        logger.warning(
            "[taxonomy] %s non-success status=%s body=%s",
            path,
            resp.status_code,
            resp.text[:1000],
        )
        raise TaxonomyApiError(f"{path} returned HTTP {resp.status_code}")

    try:
        return resp.json() or {}
    except ValueError as exc:
        logger.error("[taxonomy] failed to parse %s JSON: %s", path, exc)
        raise TaxonomyApiError(f"{path} returned invalid JSON") from exc


def _suggestion_is_leaf(suggestion: Dict[str, Any]) -> bool:
    # Suggestions are normally leaves; the payload only says otherwise when a
    # node carries children or an explicit leaf flag set to false.
    if suggestion.get("leafCategoryTreeNode") is False:
        return False
    category = suggestion.get("category") or {}
    if category.get("childCategoryTreeNodes") or suggestion.get("childCategoryTreeNodes"):
        return False
    return True


async def get_category_suggestions(
    access_token: str,
    keywords: str,
) -> List[TaxonomyCategorySuggestion]:
    """Return ranked Taxonomy category suggestions (best first)."""

    keywords = (keywords or "").strip()
    if not keywords:
        return []

    data = await _taxonomy_get(access_token, "get_category_suggestions", {"q": keywords})

    suggestions: List[TaxonomyCategorySuggestion] = []
    for s in data.get("categorySuggestions") or []:
        category = s.get("category") or {}
        cat_id = category.get("categoryId")
        cat_name = category.get("categoryName")
        if not cat_id or not cat_name:
            continue

        # Ancestors come nearest-first; the path reads root-first.
        ancestors = s.get("categoryTreeNodeAncestors") or []
        parts = [a.get("categoryName") for a in reversed(ancestors) if a.get("categoryName")]
        parts.append(cat_name)

        suggestions.append(
            TaxonomyCategorySuggestion(
                id=str(cat_id),
                name=str(cat_name),
                path=" > ".join(parts),
                is_leaf=_suggestion_is_leaf(s),
            )
        )

    return suggestions


async def get_item_aspects_for_category(
    access_token: str,
    category_id: str,
) -> List[CategoryAspect]:
    data = await _taxonomy_get(
        access_token,
        "get_item_aspects_for_category",
        {"category_id": str(category_id)},
    )

    aspects: List[CategoryAspect] = []
    for raw in data.get("aspects") or []:
        name: Optional[str] = raw.get("localizedAspectName")
        if not name:
            continue
        constraint = raw.get("aspectConstraint") or {}
        values = [
            v.get("localizedValue")
            for v in raw.get("aspectValues") or []
            if v.get("localizedValue")
        ]
        aspects.append(
            CategoryAspect(
                name=name,
                required=bool(constraint.get("aspectRequired")),
                mode=constraint.get("aspectMode") or "FREE_TEXT",
                values=values,
            )
        )
    return aspects
