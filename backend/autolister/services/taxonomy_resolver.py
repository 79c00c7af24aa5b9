"""Map a free-text product title to an eBay leaf category.

Resolution never raises: any upstream failure or empty result falls back to
the "Everything Else" leaf so a listing can still be attempted. A branch
(non-leaf) top suggestion is reported with ``match_type="non_leaf"`` rather
than being followed into its children; the listing pipeline refuses it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from autolister.errors import EbayAuthError
from autolister.services import ebay_api_client
from autolister.services.ebay_api_client import TaxonomyApiError, TaxonomyCategorySuggestion
from autolister.services.ebay_token_provider import token_provider
from autolister.utils.logger import logger

MAX_QUERY_LENGTH = 100

FALLBACK_CATEGORY_ID = "99"
FALLBACK_CATEGORY_NAME = "Everything Else"

# match_type values
MATCH_EXACT = "exact"
MATCH_NON_LEAF = "non_leaf"
MATCH_NO_MATCH = "no_match"
MATCH_API_ERROR = "api_error"
MATCH_DEFAULT = "default"
MATCH_ERROR = "error"


@dataclass
class CategoryMatch:
    id: str
    name: str
    match_type: str
    is_leaf: bool = True
    path: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.match_type in (MATCH_NO_MATCH, MATCH_API_ERROR, MATCH_DEFAULT, MATCH_ERROR)

    def as_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "matchType": self.match_type}


def fallback_category(match_type: str) -> CategoryMatch:
    return CategoryMatch(FALLBACK_CATEGORY_ID, FALLBACK_CATEGORY_NAME, match_type)


def truncate_title(title: str, limit: int = MAX_QUERY_LENGTH) -> str:
    """Collapse whitespace and cut to ``limit`` characters at a word boundary.

    A single word longer than ``limit`` has no boundary to cut on and is hard
    truncated.
    """
    text = " ".join((title or "").split())
    if len(text) <= limit:
        return text
    if text[limit] == " ":
        return text[:limit].rstrip()
    head = text[:limit]
    cut = head.rfind(" ")
    if cut <= 0:
        return head
    return head[:cut].rstrip()


SuggestFn = Callable[[str, str], Awaitable[List[TaxonomyCategorySuggestion]]]


class TaxonomyResolver:
    def __init__(
        self,
        get_token: Optional[Callable[[], Awaitable[str]]] = None,
        suggest: Optional[SuggestFn] = None,
    ):
        self._get_token = get_token or token_provider.get_app_token
        self._suggest = suggest or ebay_api_client.get_category_suggestions

    async def resolve(self, title: str) -> CategoryMatch:
        query = truncate_title(title)
        if not query:
            logger.info("[taxonomy] empty title, using fallback category")
            return fallback_category(MATCH_DEFAULT)

        try:
            token = await self._get_token()
            suggestions = await self._suggest(token, query)
        except (TaxonomyApiError, EbayAuthError) as exc:
            logger.warning("[taxonomy] suggestion lookup failed for %r: %s", query, exc)
            return fallback_category(MATCH_API_ERROR)
        except Exception:
            logger.exception("[taxonomy] unexpected error resolving %r", query)
            return fallback_category(MATCH_ERROR)

        if not suggestions:
            logger.info("[taxonomy] no category suggestions for %r", query)
            return fallback_category(MATCH_NO_MATCH)

        # The upstream ranking is authoritative.
        top = suggestions[0]
        if not top.is_leaf:
            logger.warning(
                "[taxonomy] top suggestion %s (%s) is not a leaf category for %r",
                top.id,
                top.name,
                query,
            )
            return CategoryMatch(top.id, top.name, MATCH_NON_LEAF, is_leaf=False, path=top.path)

        logger.info("[taxonomy] %r -> %s (%s)", query, top.id, top.path)
        return CategoryMatch(top.id, top.name, MATCH_EXACT, path=top.path)


taxonomy_resolver = TaxonomyResolver()
