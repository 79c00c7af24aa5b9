"""Keepa product data provider.

Normalizes Keepa ``/product`` and ``/query`` responses into ``ProductData`` so
the rest of the pipeline never sees Keepa's raw shape.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from autolister.config import settings
from autolister.errors import ProductNotFoundError, ProductProviderError
from autolister.utils.logger import logger, mask_url

KEEPA_BASE_URL = "https://api.keepa.com"
AMAZON_IMAGE_BASE = "https://m.media-amazon.com/images/I/"
# Keepa accepts up to 100 ASINs per request, but larger batches are slow and
# burn tokens on products we may never use.
PRODUCT_BATCH_SIZE = 20


@dataclass
class ProductData:
    asin: str
    title: str = ""
    brand: Optional[str] = None
    model: Optional[str] = None
    color: Optional[str] = None
    part_number: Optional[str] = None
    manufacturer: Optional[str] = None
    size: Optional[str] = None
    material: Optional[str] = None
    description: Optional[str] = None
    features: List[str] = field(default_factory=list)
    image_urls: List[str] = field(default_factory=list)
    upc: Optional[str] = None
    ean: Optional[str] = None
    root_category: Optional[int] = None
    variation_asins: List[str] = field(default_factory=list)

    @property
    def primary_image(self) -> str:
        return self.image_urls[0] if self.image_urls else ""

    @property
    def amazon_url(self) -> str:
        return f"https://www.amazon.com/dp/{self.asin}"

    def field_value(self, name: str) -> Optional[str]:
        """Return a provider field by its normalized name (``brand``, ``partNumber``...)."""
        mapping = {
            "brand": self.brand,
            "model": self.model,
            "color": self.color,
            "partNumber": self.part_number,
            "manufacturer": self.manufacturer,
            "size": self.size,
            "material": self.material,
            "upc": self.upc,
            "ean": self.ean,
        }
        value = mapping.get(name)
        if value is None:
            return None
        value = str(value).strip()
        return value or None


def _image_urls(raw: Dict[str, Any]) -> List[str]:
    urls: List[str] = []
    for img in raw.get("images") or []:
        if isinstance(img, dict):
            name = img.get("l") or img.get("m")
            if name:
                urls.append(AMAZON_IMAGE_BASE + name)
    if not urls and raw.get("imagesCSV"):
        urls = [AMAZON_IMAGE_BASE + f.strip() for f in raw["imagesCSV"].split(",") if f.strip()]
    return urls


def _first(values: Any) -> Optional[str]:
    if isinstance(values, list) and values:
        return str(values[0])
    return None


def parse_product(raw: Dict[str, Any]) -> ProductData:
    asin = str(raw.get("asin") or "").upper()
    variations = [
        str(v.get("asin")).upper()
        for v in raw.get("variations") or []
        if isinstance(v, dict) and v.get("asin")
    ]
    return ProductData(
        asin=asin,
        title=raw.get("title") or "",
        brand=raw.get("brand"),
        model=raw.get("model"),
        color=raw.get("color"),
        part_number=raw.get("partNumber"),
        manufacturer=raw.get("manufacturer"),
        size=raw.get("size"),
        material=raw.get("material"),
        description=raw.get("description"),
        features=list(raw.get("features") or []),
        image_urls=_image_urls(raw),
        upc=_first(raw.get("upcList")),
        ean=_first(raw.get("eanList")),
        root_category=raw.get("rootCategory"),
        variation_asins=[v for v in variations if v != asin],
    )


class KeepaClient:
    def __init__(self, api_key: Optional[str] = None, domain: Optional[int] = None, timeout: float = 30.0):
        self.api_key = api_key or settings.KEEPA_API_KEY
        self.domain = domain or settings.KEEPA_DOMAIN
        self.timeout = timeout

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ProductProviderError("KEEPA_API_KEY is not configured")

        query = {"key": self.api_key, "domain": self.domain, **params}
        url = f"{KEEPA_BASE_URL}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, params=query)
        except httpx.RequestError as exc:
            logger.error("[keepa] %s request error: %s", path, exc)
            raise ProductProviderError(f"Keepa {path} request failed") from exc

        if resp.status_code != 200:
            logger.warning("[keepa] %s status=%s url=%s", path, resp.status_code, mask_url(str(resp.url)))
            raise ProductProviderError(f"Keepa {path} returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProductProviderError(f"Keepa {path} returned invalid JSON") from exc

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProductProviderError(f"Keepa error: {message}")
        return data

    async def fetch_products(self, asins: Sequence[str]) -> List[ProductData]:
        products: List[ProductData] = []
        asins = [a.upper() for a in asins if a]
        for start in range(0, len(asins), PRODUCT_BATCH_SIZE):
            batch = asins[start:start + PRODUCT_BATCH_SIZE]
            data = await self._get("product", {"asin": ",".join(batch), "stats": 180, "offers": 20})
            for raw in data.get("products") or []:
                # Keepa returns a stub with no title for unknown ASINs.
                if raw and raw.get("title"):
                    products.append(parse_product(raw))
        return products

    async def fetch_product(self, asin: str) -> ProductData:
        products = await self.fetch_products([asin])
        if not products:
            raise ProductNotFoundError(asin)
        return products[0]

    async def search_brand(self, brand: str, root_category: Optional[int], per_page: int = 50) -> List[str]:
        selection = json.dumps({
            "brand": brand or "",
            "rootCategory": root_category or 0,
            "perPage": per_page,
        })
        data = await self._get("query", {"selection": selection})
        return [str(a).upper() for a in data.get("asinList") or []]


keepa_client = KeepaClient()
