"""Tests for the catalog price gate."""

import pytest

from catalog import validate_catalog
from conftest import FakeSmmAPI
from errors import CatalogPriceExceeded, CatalogServiceUnavailable, ExternalApiError


class TestValidateCatalog:
    async def test_returns_matched_entries_by_key(self, fake_api, services):
        matched = await validate_catalog(fake_api, services)

        assert set(matched) == {"viewers", "upvotes"}
        assert matched["viewers"].service_id == "24044"
        assert matched["viewers"].price == 9000
        assert matched["upvotes"].raw["name"] == "Quora Upvotes"

    async def test_price_equal_to_ceiling_passes(self, services):
        api = FakeSmmAPI(catalog=[{"id": "24044", "price": "10000"}, {"id": 24047, "price": 150000}])

        matched = await validate_catalog(api, services)

        assert matched["viewers"].price == 10000

    async def test_missing_service(self, services):
        api = FakeSmmAPI(catalog=[{"id": 24044, "price": 9000}])

        with pytest.raises(CatalogServiceUnavailable) as exc:
            await validate_catalog(api, services)
        assert exc.value.service_id == "24047"

    async def test_price_above_ceiling(self, services):
        api = FakeSmmAPI(catalog=[{"id": 24044, "price": 10001}, {"id": 24047, "price": 1}])

        with pytest.raises(CatalogPriceExceeded) as exc:
            await validate_catalog(api, services)
        assert exc.value.service_id == "24044"
        assert exc.value.price == 10001

    async def test_unreadable_price(self, services):
        api = FakeSmmAPI(catalog=[{"id": 24044, "price": "free"}, {"id": 24047, "price": 1}])

        with pytest.raises(CatalogServiceUnavailable):
            await validate_catalog(api, services)

    async def test_fetch_failure_is_unavailable(self, fake_api, services):
        fake_api.catalog_error = ExternalApiError("services", "Invalid API key")

        with pytest.raises(CatalogServiceUnavailable) as exc:
            await validate_catalog(fake_api, services)
        assert exc.value.service_id is None
