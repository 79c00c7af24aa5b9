"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; point them at sqlite before anything
# from autolister is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["START_BACKGROUND_WORKERS"] = "false"
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from autolister.errors import ProductNotFoundError  # noqa: E402
from autolister.models_sqlalchemy import Base  # noqa: E402
from autolister.models_sqlalchemy import models  # noqa: E402,F401
from autolister.services.keepa_client import ProductData  # noqa: E402


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session() -> Session:
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


# ---------------------------------------------------------------------------
# Fakes for external collaborators
# ---------------------------------------------------------------------------


class FakeInventoryApi:
    """In-memory stand-in for EbayInventoryApi.

    ``failures`` maps a method name to the exception it should raise.
    """

    def __init__(self, failures: Optional[Dict[str, BaseException]] = None):
        self.failures = failures or {}
        self.calls: List[tuple] = []
        self.items: Dict[str, Dict[str, Any]] = {}
        self.offers: Dict[str, Dict[str, Any]] = {}
        self._next_offer = 1

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    async def put_inventory_item(self, access_token: str, sku: str, body: Dict[str, Any]) -> None:
        self.calls.append(("put_inventory_item", sku))
        self._maybe_fail("put_inventory_item")
        self.items[sku] = body

    async def get_inventory_item(self, access_token: str, sku: str) -> Optional[Dict[str, Any]]:
        return self.items.get(sku)

    async def delete_inventory_item(self, access_token: str, sku: str) -> None:
        self.calls.append(("delete_inventory_item", sku))
        self._maybe_fail("delete_inventory_item")
        self.items.pop(sku, None)

    async def create_offer(self, access_token: str, body: Dict[str, Any]) -> str:
        self.calls.append(("create_offer", body["sku"]))
        self._maybe_fail("create_offer")
        offer_id = f"offer-{self._next_offer}"
        self._next_offer += 1
        self.offers[offer_id] = body
        return offer_id

    async def publish_offer(self, access_token: str, offer_id: str) -> str:
        self.calls.append(("publish_offer", offer_id))
        self._maybe_fail("publish_offer")
        return "110000000001"

    async def delete_offer(self, access_token: str, offer_id: str) -> None:
        self.calls.append(("delete_offer", offer_id))
        self._maybe_fail("delete_offer")
        self.offers.pop(offer_id, None)

    @property
    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeProductProvider:
    def __init__(self, products: Optional[List[ProductData]] = None, search_results: Optional[List[str]] = None):
        self.products = {p.asin: p for p in products or []}
        self.search_results = search_results or []
        self.search_calls: List[tuple] = []

    async def fetch_product(self, asin: str) -> ProductData:
        product = self.products.get(asin.upper())
        if product is None:
            raise ProductNotFoundError(asin)
        return product

    async def fetch_products(self, asins) -> List[ProductData]:
        return [self.products[a] for a in asins if a in self.products]

    async def search_brand(self, brand: str, root_category: Optional[int], per_page: int = 50) -> List[str]:
        self.search_calls.append((brand, root_category))
        return list(self.search_results)


class FakeInference:
    """Returns queued replies in order; an Exception instance is raised instead."""

    def __init__(self, replies: Optional[List[Any]] = None, default: str = ""):
        self.replies = list(replies or [])
        self.default = default
        self.prompts: List[str] = []

    async def complete(self, prompt: str, *, system: Optional[str] = None, max_tokens: int = 300) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


async def fake_token() -> str:
    return "test-token"


@pytest.fixture()
def headphones() -> ProductData:
    return ProductData(
        asin="B0TEST0001",
        title="Acme Over-Ear Wireless Bluetooth Headphones with Noise Cancelling, Black",
        brand="Acme",
        model="AC-100",
        color="Black",
        part_number="AC100-BLK",
        description="Great sound & long battery life",
        features=["40h battery", "Noise cancelling"],
        image_urls=[f"https://m.media-amazon.com/images/I/img{i}.jpg" for i in range(15)],
        upc="012345678905",
        root_category=172282,
    )
