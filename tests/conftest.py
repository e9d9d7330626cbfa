# tests/conftest.py
import json

import httpx
import pytest

from listing_sync.core.config import Settings
from listing_sync.schemas.listing import RemoteListing
from listing_sync.services.catalog.client import CatalogClient
from listing_sync.services.retry import request_policy


@pytest.fixture
def settings(tmp_path):
    """Provide test settings"""
    return Settings(
        CATALOG_API_KEY="test_key",
        CATALOG_ACCESS_TOKEN="test_token",
        CATALOG_SHOP_ID=42,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/checkpoints.db",
        BACKUP_DIR=str(tmp_path / "backups"),
    )


def listing_payload(listing_id, title="Test Mug", price=10.0, quantity=5, sku="MUG-1", **extra):
    """Raw catalog API payload for a listing without variations"""
    amount = int(round(price * 100))
    payload = {
        "listing_id": listing_id,
        "shop_id": 42,
        "title": title,
        "description": "A ceramic mug",
        "state": "active",
        "quantity": quantity,
        "tags": ["mug", "ceramic"],
        "price": {"amount": amount, "divisor": 100, "currency_code": "USD"},
        "has_variations": False,
        "taxonomy_id": 1,
        "shipping_profile_id": 7,
        "inventory": {
            "products": [{
                "product_id": listing_id * 10,
                "sku": sku,
                "is_deleted": False,
                "property_values": [],
                "offerings": [{
                    "offering_id": listing_id * 100,
                    "quantity": quantity,
                    "is_enabled": True,
                    "is_deleted": False,
                    "price": {"amount": amount, "divisor": 100, "currency_code": "USD"},
                    "readiness_state_id": 3,
                }],
            }],
            "price_on_property": [],
            "quantity_on_property": [],
            "sku_on_property": [],
        },
    }
    payload.update(extra)
    return payload


def variation_listing_payload(listing_id, sizes=(("S", 11), ("M", 12))):
    """Listing whose price and quantity vary by a Size property (id 100)"""
    payload = listing_payload(listing_id, has_variations=True)
    payload["inventory"] = {
        "products": [
            {
                "product_id": product_id,
                "sku": f"SHIRT-{size}",
                "is_deleted": False,
                "property_values": [{
                    "property_id": 100,
                    "property_name": "Size",
                    "value_ids": [product_id + 1000],
                    "values": [size],
                }],
                "offerings": [{
                    "offering_id": product_id * 10,
                    "quantity": 2,
                    "is_enabled": True,
                    "is_deleted": False,
                    "price": {"amount": 2000, "divisor": 100, "currency_code": "USD"},
                    "readiness_state_id": 3,
                }],
            }
            for size, product_id in sizes
        ],
        "price_on_property": [100],
        "quantity_on_property": [100],
        "sku_on_property": [100],
    }
    return payload


@pytest.fixture
def make_listing():
    """Factory for RemoteListing models"""
    def _make(listing_id, **kwargs):
        return RemoteListing.model_validate(listing_payload(listing_id, **kwargs))
    return _make


@pytest.fixture
def make_variation_listing():
    def _make(listing_id, **kwargs):
        return RemoteListing.model_validate(variation_listing_payload(listing_id, **kwargs))
    return _make


class RecordingTransport:
    """
    httpx.MockTransport wrapper that records every request and answers
    with a handler ``request -> httpx.Response``.
    """

    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request):
        self.requests.append(request)
        return self.handler(request)

    def bodies(self):
        return [json.loads(r.content) if r.content else None for r in self.requests]


@pytest.fixture
def make_client():
    """Build a CatalogClient over a mock transport with zero retry delay"""
    def _make(handler, max_retries=3):
        recorder = RecordingTransport(handler)
        client = CatalogClient(
            api_key="test_key",
            access_token="test_token",
            retry_policy=request_policy(max_retries=max_retries, base_delay=0),
            transport=recorder.transport,
        )
        return client, recorder
    return _make


@pytest.fixture
def listing_json():
    """Factory for raw listing payloads, as the API returns them"""
    return listing_payload


@pytest.fixture
def variation_listing_json():
    return variation_listing_payload
