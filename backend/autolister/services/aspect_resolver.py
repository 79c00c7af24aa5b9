"""Fill a category's item specifics from product data and learned patterns.

For every required aspect the value comes from the first source that has one:

1. a category-scoped keyword pattern matching the title,
2. a universal keyword pattern matching the title,
3. the product provider field mapped to that aspect name,
4. a static per-category default.

Anything still unresolved is logged as a pending ``AspectMiss`` for the
learning loop and left out of the payload. Optional aspects are filled from
provider fields only.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from autolister.errors import EbayAuthError
from autolister.models_sqlalchemy.models import AspectKeyword, AspectMiss, CategoryAspectRequirement
from autolister.services import ebay_api_client
from autolister.services.ebay_api_client import CategoryAspect, TaxonomyApiError
from autolister.services.ebay_token_provider import token_provider
from autolister.services.keepa_client import ProductData
from autolister.utils.logger import logger

# Provider field -> eBay aspect name.
PROVIDER_ASPECT_FIELDS: Mapping[str, str] = {
    "brand": "Brand",
    "model": "Model",
    "color": "Color",
    "partNumber": "MPN",
    "manufacturer": "Manufacturer",
    "size": "Size",
    "material": "Material",
    "upc": "UPC",
    "ean": "EAN",
}

# Static fallbacks keyed by category id, consulted after patterns and
# provider data.
STATIC_ASPECT_DEFAULTS: Mapping[str, Mapping[str, str]] = {
    "112529": {"Connectivity": "Wireless"},  # Headphones
    "111694": {"Connectivity": "Wireless"},  # Portable speakers
    "617": {"Format": "DVD"},  # DVDs & Blu-ray Discs
}

# Where a resolved value came from.
SOURCE_CATEGORY_PATTERN = "category_pattern"
SOURCE_UNIVERSAL_PATTERN = "universal_pattern"
SOURCE_PROVIDER = "provider"
SOURCE_STATIC_DEFAULT = "static_default"


@dataclass
class AspectResolution:
    aspects: Dict[str, List[str]] = field(default_factory=dict)
    misses: List[str] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)


@dataclass
class _CompiledPattern:
    aspect_name: str
    value: str
    regex: "re.Pattern[str]"
    category_scoped: bool


def _provider_value_for(aspect_name: str, product: ProductData) -> Optional[str]:
    for provider_field, name in PROVIDER_ASPECT_FIELDS.items():
        if name.lower() == aspect_name.lower():
            return product.field_value(provider_field)
    return None


def compile_patterns(rows: Iterable[AspectKeyword]) -> Dict[str, List[_CompiledPattern]]:
    """Group patterns by aspect name, category-scoped ones first.

    Within each group the incoming order is preserved, so the first
    inserted pattern wins among equals. Patterns that do not compile are
    skipped.
    """
    scoped: Dict[str, List[_CompiledPattern]] = {}
    universal: Dict[str, List[_CompiledPattern]] = {}
    for row in rows:
        try:
            regex = re.compile(row.keyword_pattern, re.IGNORECASE)
        except re.error as exc:
            logger.warning(
                "[aspects] invalid keyword pattern id=%s aspect=%s pattern=%r: %s",
                row.id,
                row.aspect_name,
                row.keyword_pattern,
                exc,
            )
            continue
        bucket = scoped if row.category_id else universal
        bucket.setdefault(row.aspect_name, []).append(
            _CompiledPattern(row.aspect_name, row.aspect_value, regex, bool(row.category_id))
        )

    grouped: Dict[str, List[_CompiledPattern]] = {}
    for name in set(scoped) | set(universal):
        grouped[name] = scoped.get(name, []) + universal.get(name, [])
    return grouped


def match_pattern(
    aspect_name: str,
    title: str,
    patterns: Mapping[str, Sequence[_CompiledPattern]],
) -> Optional[Tuple[str, bool]]:
    """Return ``(value, category_scoped)`` of the first pattern matching ``title``."""
    for pattern in patterns.get(aspect_name, ()):
        if pattern.regex.search(title or ""):
            return pattern.value, pattern.category_scoped
    return None


def load_patterns(db: Session, category_id: str) -> List[AspectKeyword]:
    rows = (
        db.query(AspectKeyword)
        .filter((AspectKeyword.category_id == category_id) | (AspectKeyword.category_id.is_(None)))
        .order_by(AspectKeyword.id.asc())
        .all()
    )
    return rows


def load_requirements(db: Session, category_id: str) -> List[CategoryAspectRequirement]:
    return (
        db.query(CategoryAspectRequirement)
        .filter(CategoryAspectRequirement.category_id == category_id)
        .order_by(CategoryAspectRequirement.id.asc())
        .all()
    )


def store_requirements(db: Session, category_id: str, aspects: Sequence[CategoryAspect]) -> List[CategoryAspectRequirement]:
    """Replace the stored requirements for a category with ``aspects``."""
    db.query(CategoryAspectRequirement).filter(
        CategoryAspectRequirement.category_id == category_id
    ).delete(synchronize_session=False)

    rows: List[CategoryAspectRequirement] = []
    seen = set()
    for aspect in aspects:
        if aspect.name in seen:
            continue
        seen.add(aspect.name)
        row = CategoryAspectRequirement(
            category_id=category_id,
            aspect_name=aspect.name,
            required=aspect.required,
            aspect_mode=aspect.mode,
            allowed_values=list(aspect.values) or None,
        )
        db.add(row)
        rows.append(row)
    db.commit()
    logger.info(
        "[aspects] stored %d aspects (%d required) for category %s",
        len(rows),
        sum(1 for r in rows if r.required),
        category_id,
    )
    return rows


FetchAspectsFn = Callable[[str, str], Awaitable[List[CategoryAspect]]]


async def sync_requirements(
    db: Session,
    category_id: str,
    *,
    get_token: Optional[Callable[[], Awaitable[str]]] = None,
    fetch_aspects: Optional[FetchAspectsFn] = None,
) -> List[CategoryAspectRequirement]:
    """Fetch a category's aspects from the Taxonomy API and store them."""
    get_token = get_token or token_provider.get_app_token
    fetch_aspects = fetch_aspects or ebay_api_client.get_item_aspects_for_category
    token = await get_token()
    aspects = await fetch_aspects(token, category_id)
    return store_requirements(db, category_id, aspects)


def record_misses(
    db: Session,
    *,
    asin: str,
    category_id: Optional[str],
    category_name: Optional[str],
    aspect_names: Iterable[str],
    product: Optional[ProductData] = None,
    product_title: Optional[str] = None,
) -> List[AspectMiss]:
    """Insert pending misses, skipping ones already waiting for review."""
    created: List[AspectMiss] = []
    for name in aspect_names:
        existing = (
            db.query(AspectMiss.id)
            .filter(
                AspectMiss.asin == asin,
                AspectMiss.category_id == category_id,
                AspectMiss.aspect_name == name,
                AspectMiss.status == "pending",
            )
            .first()
        )
        if existing:
            continue
        miss = AspectMiss(
            asin=asin,
            category_id=category_id,
            category_name=category_name,
            aspect_name=name,
            product_title=product_title or (product.title if product else None),
            keepa_brand=product.brand if product else None,
            keepa_model=product.model if product else None,
            status="pending",
        )
        db.add(miss)
        created.append(miss)
    if created:
        db.commit()
        logger.info(
            "[aspects] recorded %d aspect misses for %s in category %s: %s",
            len(created),
            asin,
            category_id,
            ", ".join(m.aspect_name for m in created),
        )
    return created


class AspectResolver:
    def __init__(
        self,
        db: Session,
        *,
        static_defaults: Mapping[str, Mapping[str, str]] = STATIC_ASPECT_DEFAULTS,
        get_token: Optional[Callable[[], Awaitable[str]]] = None,
        fetch_aspects: Optional[FetchAspectsFn] = None,
    ):
        self.db = db
        self.static_defaults = static_defaults
        self._get_token = get_token
        self._fetch_aspects = fetch_aspects

    async def requirements_for(self, category_id: str) -> List[CategoryAspectRequirement]:
        rows = load_requirements(self.db, category_id)
        if rows:
            return rows
        try:
            return await sync_requirements(
                self.db,
                category_id,
                get_token=self._get_token,
                fetch_aspects=self._fetch_aspects,
            )
        except (TaxonomyApiError, EbayAuthError) as exc:
            logger.warning(
                "[aspects] could not fetch aspects for category %s, continuing without requirements: %s",
                category_id,
                exc,
            )
            return []

    async def resolve(
        self,
        category_id: str,
        product: ProductData,
        *,
        category_name: Optional[str] = None,
    ) -> AspectResolution:
        requirements = await self.requirements_for(category_id)
        patterns = compile_patterns(load_patterns(self.db, category_id))
        defaults = self.static_defaults.get(category_id, {})
        result = AspectResolution(required=[r.aspect_name for r in requirements if r.required])

        for requirement in requirements:
            name = requirement.aspect_name
            if requirement.required:
                resolved = self._resolve_required(name, product, patterns, defaults)
                if resolved is None:
                    result.misses.append(name)
                    continue
                value, source = resolved
            else:
                value = _provider_value_for(name, product)
                if value is None:
                    continue
                source = SOURCE_PROVIDER
            result.aspects[name] = [value]
            result.sources[name] = source

        # Identifying fields are always sent when the provider has them, even
        # for categories whose requirements are unknown.
        for provider_field, name in PROVIDER_ASPECT_FIELDS.items():
            if name in result.aspects or provider_field in ("upc", "ean"):
                continue
            value = product.field_value(provider_field)
            if value:
                result.aspects[name] = [value]
                result.sources[name] = SOURCE_PROVIDER

        if result.misses:
            record_misses(
                self.db,
                asin=product.asin,
                category_id=category_id,
                category_name=category_name,
                aspect_names=result.misses,
                product=product,
            )

        logger.info(
            "[aspects] %s category=%s resolved=%d missing=%s",
            product.asin,
            category_id,
            len(result.aspects),
            result.misses or "-",
        )
        return result

    def _resolve_required(
        self,
        name: str,
        product: ProductData,
        patterns: Mapping[str, Sequence[_CompiledPattern]],
        defaults: Mapping[str, str],
    ) -> Optional[Tuple[str, str]]:
        matched = match_pattern(name, product.title, patterns)
        if matched is not None:
            value, scoped = matched
            return value, SOURCE_CATEGORY_PATTERN if scoped else SOURCE_UNIVERSAL_PATTERN

        provider_value = _provider_value_for(name, product)
        if provider_value is not None:
            return provider_value, SOURCE_PROVIDER

        if name in defaults:
            return defaults[name], SOURCE_STATIC_DEFAULT
        return None
