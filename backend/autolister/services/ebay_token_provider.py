"""OAuth token acquisition for the eBay REST APIs.

Inventory calls need a *user* token minted from the seller's long-lived
refresh token; Taxonomy reads are fine with an *application* token from the
client_credentials grant. Both are cached in-process until shortly before
they expire.
"""
from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx

from autolister.config import settings
from autolister.errors import EbayAuthError
from autolister.utils.logger import logger, sanitize_payload

APP_SCOPE = "https://api.ebay.com/oauth/api_scope"
USER_SCOPES = [
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.account",
]
# Refresh this long before the advertised expiry.
EXPIRY_MARGIN = timedelta(minutes=5)


@dataclass
class CachedToken:
    access_token: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at - EXPIRY_MARGIN


class EbayTokenProvider:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_url: Optional[str] = None,
    ):
        self.client_id = client_id or settings.EBAY_CLIENT_ID
        self.client_secret = client_secret or settings.EBAY_CLIENT_SECRET
        self.refresh_token = refresh_token or settings.EBAY_REFRESH_TOKEN
        self.token_url = token_url or settings.ebay_token_url
        self._cache: Dict[str, CachedToken] = {}
        self._lock = asyncio.Lock()

    def _basic_auth_header(self) -> str:
        credentials = f"{self.client_id}:{self.client_secret}"
        return "Basic " + base64.b64encode(credentials.encode()).decode()

    async def get_user_token(self) -> str:
        if not self.refresh_token:
            raise EbayAuthError("EBAY_REFRESH_TOKEN is not configured")
        return await self._get("user", {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "scope": " ".join(USER_SCOPES),
        })

    async def get_app_token(self) -> str:
        return await self._get("app", {
            "grant_type": "client_credentials",
            "scope": APP_SCOPE,
        })

    async def _get(self, kind: str, data: Dict[str, str]) -> str:
        if not self.client_id or not self.client_secret:
            raise EbayAuthError("EBAY_CLIENT_ID / EBAY_CLIENT_SECRET are not configured")

        async with self._lock:
            now = datetime.now(timezone.utc)
            cached = self._cache.get(kind)
            if cached and cached.is_fresh(now):
                return cached.access_token

            headers = {
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": self._basic_auth_header(),
            }
            logger.info("[ebay-auth] requesting %s token payload=%s", kind, sanitize_payload(data))
            try:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self.token_url, headers=headers, data=data)
            except httpx.RequestError as exc:
                logger.error("[ebay-auth] token request error: %s", exc)
                raise EbayAuthError(f"eBay token request failed: {exc}") from exc

            if response.status_code != 200:
                logger.error(
                    "[ebay-auth] token request failed status=%s body=%s",
                    response.status_code,
                    response.text[:500],
                )
                raise EbayAuthError(f"eBay token request failed with status {response.status_code}")

            try:
                body = response.json()
                token = body["access_token"]
            except (ValueError, KeyError) as exc:
                raise EbayAuthError("eBay token response did not contain access_token") from exc

            expires_in = int(body.get("expires_in") or 7200)
            self._cache[kind] = CachedToken(token, now + timedelta(seconds=expires_in))
            return token


token_provider = EbayTokenProvider()
