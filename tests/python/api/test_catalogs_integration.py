"""Integration tests for the catalog clients (requires network access).

These tests query the real catalogs.
Run with: pytest tests/python/api/test_catalogs_integration.py -v -m integration
"""

from datetime import datetime, timedelta, timezone

import pytest

from synthsync.api.catalogs import SynplicityCatalogApi, ZCatalogApi
from synthsync.api.client import CatalogApiError, MapPage
from synthsync.api.http import HttpClient

pytestmark = pytest.mark.integration

RECENT = datetime.now(timezone.utc) - timedelta(days=365)


def catalog_accessible(api) -> bool:
    """Check if a catalog answers at all."""
    try:
        api.get_map_page(1, 1, RECENT, None, timeout=10)
        return True
    except CatalogApiError:
        return False


class TestZCatalogIntegration:
    """Integration tests that query synthriderz.com."""

    def test_get_first_page(self) -> None:
        """Should return a page of maps newest first."""
        api = ZCatalogApi(HttpClient())
        if not catalog_accessible(api):
            pytest.skip("synthriderz.com is not reachable")

        page = api.get_map_page(10, 1, RECENT, None, timeout=10)

        assert isinstance(page, MapPage)
        assert len(page.data) <= 10
        times = [item.get_published_at_sec() for item in page.data]
        assert times == sorted(times, reverse=True)


class TestSynplicityCatalogIntegration:
    """Integration tests that query Synplicity."""

    def test_get_first_page(self) -> None:
        """Should return a page of maps."""
        api = SynplicityCatalogApi(HttpClient())
        if not catalog_accessible(api):
            pytest.skip("Synplicity is not reachable")

        page = api.get_map_page(10, 1, RECENT, ["Expert"], timeout=10)

        assert isinstance(page, MapPage)
        assert page.page_count >= 1
