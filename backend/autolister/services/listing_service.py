"""Create and publish an eBay listing for a product id.

``ListingBuilder`` runs the inventory item -> offer -> publish sequence and
undoes whatever it created when a later step fails. ``ListingPipeline`` wires
the product provider, taxonomy and aspect resolution in front of it.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from autolister.config import settings
from autolister.errors import (
    EbayApiError,
    InvalidConditionError,
    ListingStepError,
    ListingValidationError,
    MissingAspectsError,
    NonLeafCategoryError,
)
from autolister.services.aspect_resolver import AspectResolver, record_misses
from autolister.services.ebay_inventory_client import EbayInventoryApi, inventory_api
from autolister.services.ebay_token_provider import token_provider
from autolister.services.keepa_client import KeepaClient, ProductData, keepa_client
from autolister.services.taxonomy_resolver import CategoryMatch, TaxonomyResolver, taxonomy_resolver
from autolister.utils.logger import logger

ASIN_RE = re.compile(r"^B[0-9A-Z]{9}$")

CONDITIONS: FrozenSet[str] = frozenset({
    "NEW",
    "LIKE_NEW",
    "NEW_OTHER",
    "NEW_WITH_DEFECTS",
    "MANUFACTURER_REFURBISHED",
    "CERTIFIED_REFURBISHED",
    "EXCELLENT_REFURBISHED",
    "VERY_GOOD_REFURBISHED",
    "GOOD_REFURBISHED",
    "SELLER_REFURBISHED",
    "USED_EXCELLENT",
    "USED_VERY_GOOD",
    "USED_GOOD",
    "USED_ACCEPTABLE",
    "FOR_PARTS_OR_NOT_WORKING",
})

CONDITION_ALIASES: Mapping[str, str] = {
    "USED": "USED_EXCELLENT",
    "VERY_GOOD": "USED_VERY_GOOD",
    "GOOD": "USED_GOOD",
    "ACCEPTABLE": "USED_ACCEPTABLE",
    "REFURBISHED": "SELLER_REFURBISHED",
    "FOR_PARTS": "FOR_PARTS_OR_NOT_WORKING",
}

_MEDIA_CONDITIONS = frozenset({"NEW", "LIKE_NEW", "USED_VERY_GOOD", "USED_GOOD", "USED_ACCEPTABLE"})

# Valid conditions per leaf category. Unmapped categories accept the full
# vocabulary and leave the final word to eBay.
CATEGORY_CONDITIONS: Mapping[str, FrozenSet[str]] = {
    "617": _MEDIA_CONDITIONS,  # DVDs & Blu-ray Discs
    "139973": _MEDIA_CONDITIONS,  # Video Games
    "261186": _MEDIA_CONDITIONS,  # Books
    "176984": _MEDIA_CONDITIONS,  # Music CDs
    "180959": frozenset({"NEW", "NEW_OTHER"}),  # Health & Beauty
    "11700": frozenset({"NEW", "NEW_OTHER", "USED_EXCELLENT", "FOR_PARTS_OR_NOT_WORKING"}),  # Home & Garden
}
DEFAULT_ALLOWED_CONDITIONS: FrozenSet[str] = CONDITIONS

MAX_TITLE_LENGTH = 80
MAX_DESCRIPTION_LENGTH = 4000
MAX_IMAGES = 12

# "The item specific Brand is missing. Add Brand to this listing..."
_MISSING_ASPECT_RE = re.compile(r"item specific ([^.;]+?) is missing", re.IGNORECASE)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_BARE_AMP_RE = re.compile(r"&(?!(amp|lt|gt|quot|apos|#\d+|#x[0-9a-f]+);)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def normalize_product_id(product_id: str) -> str:
    value = (product_id or "").strip().upper()
    if not ASIN_RE.match(value):
        raise ListingValidationError(f"Invalid ASIN format: {product_id!r}")
    return value


def make_sku(product_id: str, prefix: Optional[str] = None) -> str:
    """Deterministic SKU for a product; retries overwrite the same item."""
    prefix = settings.LISTING_SKU_PREFIX if prefix is None else prefix
    return f"{prefix}{normalize_product_id(product_id)}"


def validate_price(price: Any) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError, TypeError):
        raise ListingValidationError(f"Price is not a number: {price!r}")
    if not value.is_finite() or value <= 0:
        raise ListingValidationError("Price must be greater than zero")
    try:
        cents = value.quantize(Decimal("0.01"))
    except InvalidOperation:
        # Too many digits for the decimal context.
        raise ListingValidationError(f"Price is out of range: {price!r}")
    if value != cents:
        raise ListingValidationError("Price must have at most two decimal places")
    return cents


def validate_quantity(quantity: Any) -> int:
    if quantity is None:
        return 1
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ListingValidationError("Quantity must be an integer")
    if quantity < 1:
        raise ListingValidationError("Quantity must be at least 1")
    return quantity


def normalize_condition(condition: Optional[str]) -> str:
    value = (condition or "NEW").strip().upper().replace(" ", "_").replace("-", "_")
    value = CONDITION_ALIASES.get(value, value)
    if value not in CONDITIONS:
        raise ListingValidationError(f"Unknown condition: {condition!r}")
    return value


def parse_missing_aspects(exc: EbayApiError) -> List[str]:
    texts = [str(exc)]
    for err in exc.errors:
        if isinstance(err, dict):
            texts.extend(str(err.get(k) or "") for k in ("message", "longMessage"))
    found: List[str] = []
    for text in texts:
        for match in _MISSING_ASPECT_RE.finditer(text):
            name = match.group(1).strip()
            if name and name not in found:
                found.append(name)
    return found


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def sanitize_description(description: Optional[str]) -> Optional[str]:
    if not description:
        return None
    text = _CONTROL_CHARS_RE.sub("", str(description))
    text = _SCRIPT_RE.sub("", text)
    text = _STYLE_RE.sub("", text)
    text = _BARE_AMP_RE.sub("&amp;", text)
    text = text[:MAX_DESCRIPTION_LENGTH].strip()
    return text or None


def build_description(product: ProductData) -> str:
    if product.features:
        items = "".join(f"<li>{html.escape(f, quote=False)}</li>" for f in product.features)
        return f"<h3>Features</h3><ul>{items}</ul>"[:MAX_DESCRIPTION_LENGTH]
    return "See photos for details."


def build_inventory_item(
    product: ProductData,
    aspects: Mapping[str, List[str]],
    condition: str,
    quantity: int,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "availability": {"shipToLocationAvailability": {"quantity": quantity}},
        "condition": condition,
        "product": {
            "title": (product.title or "Untitled Product")[:MAX_TITLE_LENGTH],
            "description": sanitize_description(product.description) or build_description(product),
            "aspects": {name: list(values) for name, values in aspects.items()},
            "imageUrls": product.image_urls[:MAX_IMAGES],
        },
    }
    item = body["product"]
    if product.brand:
        item["brand"] = product.brand
    if product.part_number:
        item["mpn"] = product.part_number
    if product.upc:
        item["upc"] = [product.upc]
    if product.ean:
        item["ean"] = [product.ean]
    return body


def build_offer(sku: str, category_id: str, price: Decimal, quantity: int) -> Dict[str, Any]:
    return {
        "sku": sku,
        "marketplaceId": settings.EBAY_MARKETPLACE_ID,
        "format": "FIXED_PRICE",
        "availableQuantity": quantity,
        "categoryId": category_id,
        "listingPolicies": {
            "fulfillmentPolicyId": settings.EBAY_FULFILLMENT_POLICY_ID,
            "paymentPolicyId": settings.EBAY_PAYMENT_POLICY_ID,
            "returnPolicyId": settings.EBAY_RETURN_POLICY_ID,
        },
        "pricingSummary": {
            "price": {"currency": settings.EBAY_CURRENCY, "value": f"{price:.2f}"},
        },
        "merchantLocationKey": settings.EBAY_MERCHANT_LOCATION_KEY,
    }


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass
class ListingAttempt:
    """Compensation ledger for a single build/publish run."""

    sku: str
    category_id: str
    inventory_item_created: bool = False
    offer_id: Optional[str] = None
    published: bool = False


@dataclass
class ListingBuildResult:
    sku: str
    offer_id: str
    listing_id: Optional[str] = None

    @property
    def published(self) -> bool:
        return self.listing_id is not None


class ListingBuilder:
    def __init__(
        self,
        inventory: Optional[EbayInventoryApi] = None,
        get_token: Optional[Callable[[], Awaitable[str]]] = None,
        category_conditions: Mapping[str, FrozenSet[str]] = CATEGORY_CONDITIONS,
        default_conditions: FrozenSet[str] = DEFAULT_ALLOWED_CONDITIONS,
        sku_prefix: Optional[str] = None,
    ):
        self.inventory = inventory or inventory_api
        self._get_token = get_token or token_provider.get_user_token
        self.category_conditions = category_conditions
        self.default_conditions = default_conditions
        self.sku_prefix = sku_prefix

    def allowed_conditions(self, category_id: str) -> FrozenSet[str]:
        return self.category_conditions.get(str(category_id), self.default_conditions)

    def validate(
        self,
        product_id: str,
        category_id: str,
        price: Any,
        quantity: Any,
        condition: Optional[str],
    ) -> Tuple[str, Decimal, int, str]:
        sku = make_sku(product_id, self.sku_prefix)
        price_value = validate_price(price)
        qty = validate_quantity(quantity)
        cond = normalize_condition(condition)
        allowed = self.allowed_conditions(category_id)
        if cond not in allowed:
            raise InvalidConditionError(cond, str(category_id), allowed)
        return sku, price_value, qty, cond

    async def build_and_publish(
        self,
        *,
        product: ProductData,
        category: CategoryMatch,
        aspects: Mapping[str, List[str]],
        price: Any,
        quantity: Any = 1,
        condition: Optional[str] = "NEW",
        publish: bool = True,
    ) -> ListingBuildResult:
        if not category.is_leaf:
            raise NonLeafCategoryError(category.id, category.name)

        sku, price_value, qty, cond = self.validate(product.asin, category.id, price, quantity, condition)
        token = await self._get_token()
        attempt = ListingAttempt(sku=sku, category_id=category.id)
        context = f"asin={product.asin} sku={sku} category={category.id}"

        try:
            await self.inventory.put_inventory_item(
                token, sku, build_inventory_item(product, aspects, cond, qty)
            )
        except EbayApiError as exc:
            # PUT is an upsert on the SKU: nothing new exists if it failed.
            logger.error("[listing] inventory step failed %s: %s", context, exc)
            raise ListingStepError(
                "inventory", str(exc), sku=sku,
                status_code=exc.status_code, upstream_errors=exc.errors,
            ) from exc
        attempt.inventory_item_created = True
        logger.info("[listing] inventory item stored %s", context)

        try:
            return await self._offer_and_publish(token, attempt, price_value, qty, publish, context)
        except ListingStepError:
            raise
        except BaseException:
            # Cancellation or a non-API error: undo what exists, then let it propagate.
            logger.exception("[listing] unexpected failure after inventory step %s", context)
            await self._compensate(token, attempt)
            raise

    async def _offer_and_publish(
        self,
        token: str,
        attempt: ListingAttempt,
        price_value: Decimal,
        qty: int,
        publish: bool,
        context: str,
    ) -> ListingBuildResult:
        sku = attempt.sku
        try:
            attempt.offer_id = await self.inventory.create_offer(
                token, build_offer(sku, attempt.category_id, price_value, qty)
            )
        except EbayApiError as exc:
            logger.error("[listing] offer step failed %s: %s", context, exc)
            error = ListingStepError(
                "offer", str(exc), sku=sku,
                status_code=exc.status_code, upstream_errors=exc.errors,
            )
            error.compensation = await self._compensate(token, attempt)
            raise error from exc
        logger.info("[listing] offer %s created %s", attempt.offer_id, context)

        if not publish:
            return ListingBuildResult(sku=sku, offer_id=attempt.offer_id)

        try:
            listing_id = await self.inventory.publish_offer(token, attempt.offer_id)
        except EbayApiError as exc:
            missing = parse_missing_aspects(exc)
            logger.error(
                "[listing] publish step failed %s offer=%s missing=%s: %s",
                context, attempt.offer_id, missing or "-", exc,
            )
            if missing:
                error = MissingAspectsError(
                    missing, str(exc), sku=sku, offer_id=attempt.offer_id,
                    status_code=exc.status_code, upstream_errors=exc.errors,
                )
            else:
                error = ListingStepError(
                    "publish", str(exc), sku=sku, offer_id=attempt.offer_id,
                    status_code=exc.status_code, upstream_errors=exc.errors,
                )
            error.compensation = await self._compensate(token, attempt)
            raise error from exc

        attempt.published = True
        logger.info("[listing] published listing %s %s", listing_id, context)
        return ListingBuildResult(sku=sku, offer_id=attempt.offer_id, listing_id=listing_id)

    async def _compensate(self, token: str, attempt: ListingAttempt) -> List[Dict[str, Any]]:
        """Delete the offer, then the inventory item. Failures are logged only."""
        actions: List[Dict[str, Any]] = []
        if attempt.published:
            # The listing is live; deleting its offer would end it.
            logger.warning("[listing] compensation skipped for published sku=%s", attempt.sku)
            return actions
        if attempt.offer_id:
            try:
                await self.inventory.delete_offer(token, attempt.offer_id)
                actions.append({"action": "delete_offer", "offerId": attempt.offer_id, "ok": True})
                attempt.offer_id = None
            except Exception as exc:
                logger.error("[listing] compensation: delete offer %s failed: %s", attempt.offer_id, exc)
                actions.append({"action": "delete_offer", "offerId": attempt.offer_id, "ok": False, "error": str(exc)})
                # Deleting the item under a live offer would leave the offer
                # dangling, so stop here.
                return actions

        if attempt.inventory_item_created:
            try:
                await self.inventory.delete_inventory_item(token, attempt.sku)
                actions.append({"action": "delete_inventory_item", "sku": attempt.sku, "ok": True})
                attempt.inventory_item_created = False
            except Exception as exc:
                logger.error("[listing] compensation: delete inventory item %s failed: %s", attempt.sku, exc)
                actions.append({"action": "delete_inventory_item", "sku": attempt.sku, "ok": False, "error": str(exc)})
        return actions


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class ListingOutcome:
    sku: str
    offer_id: str
    category: CategoryMatch
    aspects: Dict[str, List[str]] = field(default_factory=dict)
    missing_aspects: List[str] = field(default_factory=list)
    listing_id: Optional[str] = None

    @property
    def listing_url(self) -> Optional[str]:
        if not self.listing_id:
            return None
        return f"{settings.ebay_listing_base_url}/{self.listing_id}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "offerId": self.offer_id,
            "listingId": self.listing_id,
            "listingUrl": self.listing_url,
            "published": self.listing_id is not None,
            "category": self.category.as_dict(),
            "aspects": self.aspects,
            "missingAspects": self.missing_aspects,
        }


class ListingPipeline:
    def __init__(
        self,
        db: Session,
        *,
        provider: Optional[KeepaClient] = None,
        taxonomy: Optional[TaxonomyResolver] = None,
        aspects: Optional[AspectResolver] = None,
        builder: Optional[ListingBuilder] = None,
    ):
        self.db = db
        self.provider = provider or keepa_client
        self.taxonomy = taxonomy or taxonomy_resolver
        self.aspects = aspects or AspectResolver(db)
        self.builder = builder or ListingBuilder()

    async def run(
        self,
        product_id: str,
        price: Any,
        quantity: Any = 1,
        condition: Optional[str] = "NEW",
        publish: bool = True,
    ) -> ListingOutcome:
        asin = normalize_product_id(product_id)
        # Fail fast on input that is bad for any category.
        validate_price(price)
        validate_quantity(quantity)
        normalize_condition(condition)

        product = await self.provider.fetch_product(asin)
        category = await self.taxonomy.resolve(product.title)
        logger.info(
            "[listing] %s category=%s (%s) match=%s",
            asin, category.id, category.name, category.match_type,
        )
        if not category.is_leaf:
            raise NonLeafCategoryError(category.id, category.name)

        # Category-specific condition check runs before aspect resolution.
        self.builder.validate(asin, category.id, price, quantity, condition)

        resolution = await self.aspects.resolve(category.id, product, category_name=category.name)

        try:
            result = await self.builder.build_and_publish(
                product=product,
                category=category,
                aspects=resolution.aspects,
                price=price,
                quantity=quantity,
                condition=condition,
                publish=publish,
            )
        except MissingAspectsError as exc:
            record_misses(
                self.db,
                asin=asin,
                category_id=category.id,
                category_name=category.name,
                aspect_names=exc.missing_aspects,
                product=product,
            )
            raise

        return ListingOutcome(
            sku=result.sku,
            offer_id=result.offer_id,
            listing_id=result.listing_id,
            category=category,
            aspects=resolution.aspects,
            missing_aspects=resolution.misses,
        )
