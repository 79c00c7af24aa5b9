from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # DATABASE_URL must be provided via environment. Postgres in production;
    # sqlite URLs are accepted for local development and the test suite.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # OpenAI-compatible inference endpoint used by the aspect learning loop and
    # the correlation worker. When OPENAI_API_KEY is missing both components
    # degrade instead of failing (misses stay pending, similar candidates are
    # rejected).
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_API_BASE_URL: str = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    EBAY_ENVIRONMENT: str = "production"  # "sandbox" or "production"

    # Seller credentials for the OAuth refresh-token grant. The refresh token
    # is minted once through the consent flow (outside this service).
    EBAY_CLIENT_ID: Optional[str] = None
    EBAY_CLIENT_SECRET: Optional[str] = None
    EBAY_REFRESH_TOKEN: Optional[str] = None

    EBAY_MARKETPLACE_ID: str = "EBAY_US"
    EBAY_CURRENCY: str = "USD"
    EBAY_CATEGORY_TREE_ID: str = "0"

    # Business policies and inventory location applied to every offer.
    EBAY_FULFILLMENT_POLICY_ID: str = "107540197026"
    EBAY_PAYMENT_POLICY_ID: str = "243561626026"
    EBAY_RETURN_POLICY_ID: str = "243561625026"
    EBAY_MERCHANT_LOCATION_KEY: str = "loc-94e1f3a0-6e1b-4d23-befc-750fe183"

    LISTING_SKU_PREFIX: str = "wi_"

    # Keepa product data provider
    KEEPA_API_KEY: Optional[str] = None
    KEEPA_DOMAIN: int = 1

    # Correlation worker handoff.
    #
    # CORRELATION_TRIGGER_MODE="http" posts the job id to
    # CORRELATION_WORKER_URL (normally this service's own
    # /api/correlation/worker endpoint) with the X-Webhook-Secret header.
    # "inline" schedules the worker on the running event loop instead.
    CORRELATION_TRIGGER_MODE: str = "http"
    CORRELATION_WORKER_URL: Optional[str] = None
    WEBHOOK_SECRET: Optional[str] = None
    CORRELATION_JOB_STALE_MINUTES: int = 30

    # Aspect learning loop schedule
    ASPECT_REVIEW_INTERVAL_SECONDS: int = 300
    ASPECT_REVIEW_BATCH_SIZE: int = 10
    ASPECT_REVIEW_MAX_ATTEMPTS: int = 3

    START_BACKGROUND_WORKERS: bool = True

    @property
    def ebay_api_base_url(self) -> str:
        if self.EBAY_ENVIRONMENT == "sandbox":
            return "https://api.sandbox.ebay.com"
        return "https://api.ebay.com"

    @property
    def ebay_token_url(self) -> str:
        return f"{self.ebay_api_base_url}/identity/v1/oauth2/token"

    @property
    def ebay_listing_base_url(self) -> str:
        if self.EBAY_ENVIRONMENT == "sandbox":
            return "https://www.sandbox.ebay.com/itm"
        return "https://www.ebay.com/itm"

    class Config:
        env_file = None
        case_sensitive = True
        extra = "ignore"


settings = Settings()

if not settings.DATABASE_URL:
    raise ValueError("DATABASE_URL must be set (Postgres in production, sqlite for local runs)")
