"""eBay Sell Inventory API calls used by the listing pipeline."""
from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from autolister.config import settings
from autolister.errors import EbayApiError
from autolister.utils.logger import logger, mask_headers


class EbayInventoryApi:
    """Inventory item / offer CRUD against ``/sell/inventory/v1``.

    Every method takes the bearer token explicitly so a single instance can
    be shared between requests. Non-2xx responses raise ``EbayApiError`` with
    eBay's ``errors`` array attached.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0):
        self.base_url = (base_url or settings.ebay_api_base_url).rstrip("/") + "/sell/inventory/v1"
        self.timeout = timeout

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Content-Language": "en-US",
            "X-EBAY-C-MARKETPLACE-ID": settings.EBAY_MARKETPLACE_ID,
        }

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = self._headers(access_token)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, headers=headers, json=json_body)
        except httpx.RequestError as exc:
            logger.error(
                "[inventory-api] %s %s request error: %s headers=%s",
                method,
                path,
                exc,
                mask_headers(headers),
            )
            raise EbayApiError(None, f"{method} {path} failed: {exc}") from exc

        body: Dict[str, Any] = {}
        if resp.content:
            try:
                parsed = resp.json()
                if isinstance(parsed, dict):
                    body = parsed
            except ValueError:
                body = {"raw": resp.text[:2000]}

        if resp.status_code >= 400:
            errors = body.get("errors") or []
            messages = [e.get("longMessage") or e.get("message") for e in errors if isinstance(e, dict)]
            message = "; ".join(m for m in messages if m) or resp.text[:2000] or f"HTTP {resp.status_code}"
            logger.warning("[inventory-api] %s %s status=%s message=%s", method, path, resp.status_code, message)
            raise EbayApiError(resp.status_code, message, errors)

        return body

    async def put_inventory_item(self, access_token: str, sku: str, body: Dict[str, Any]) -> None:
        await self._request("PUT", f"/inventory_item/{quote(sku, safe='')}", access_token, body)

    async def get_inventory_item(self, access_token: str, sku: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._request("GET", f"/inventory_item/{quote(sku, safe='')}", access_token)
        except EbayApiError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def delete_inventory_item(self, access_token: str, sku: str) -> None:
        await self._request("DELETE", f"/inventory_item/{quote(sku, safe='')}", access_token)

    async def create_offer(self, access_token: str, body: Dict[str, Any]) -> str:
        data = await self._request("POST", "/offer", access_token, body)
        offer_id = data.get("offerId")
        if not offer_id:
            raise EbayApiError(None, "createOffer response did not include offerId")
        return str(offer_id)

    async def publish_offer(self, access_token: str, offer_id: str) -> str:
        data = await self._request("POST", f"/offer/{quote(offer_id, safe='')}/publish", access_token, {})
        listing_id = data.get("listingId")
        if not listing_id:
            raise EbayApiError(None, "publishOffer response did not include listingId")
        return str(listing_id)

    async def delete_offer(self, access_token: str, offer_id: str) -> None:
        await self._request("DELETE", f"/offer/{quote(offer_id, safe='')}", access_token)


inventory_api = EbayInventoryApi()
