"""Clients for the two remote map catalogs.

Both catalogs serve the same item format but differ in how listings are
filtered and where files are downloaded from, so each implements the
``CatalogApi`` protocol on its own over a shared ``HttpClient``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from synthsync.api.client import CatalogApiError, MapItem, MapPage
from synthsync.api.http import HttpClient, HttpError

logger = logging.getLogger(__name__)

# Newest maps first
SORT_NEWEST_FIRST = "published_at,DESC"


def _utc(when: datetime) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


class ZCatalogApi:
    """Client for the synthriderz.com beatmap catalog (the primary source).

    Listings are filtered with a JSON search expression passed in the ``s``
    query parameter.

    Example:
        >>> api = ZCatalogApi(HttpClient())
        >>> page = api.get_map_page(50, 1, datetime(2024, 1, 1), ["Expert"], timeout=3)
        >>> print(page.page_count)
    """

    name = "Z"

    def __init__(self, http: HttpClient, base_url: str = "https://synthriderz.com") -> None:
        """Initialize the client.

        Args:
            http: Shared HTTP transport.
            base_url: Site root; the API lives under ``/api/beatmaps``.
        """
        self.http = http
        self.base_url = base_url.rstrip("/")

    @property
    def map_page_url(self) -> str:
        return f"{self.base_url}/api/beatmaps"

    def get_download_url(self, item: MapItem) -> str:
        return f"{self.base_url}{item.download_url}"

    def build_search_filter(self, since: datetime, difficulties: Optional[list[str]]) -> str:
        """Build the JSON search expression for a listing.

        Args:
            since: Only maps published strictly after this time.
            difficulties: If set, maps must have at least one of these.

        Returns:
            Compact JSON string for the ``s`` parameter.
        """
        search_parameters: list[dict] = [
            {"published_at": {"$gt": _utc(since).strftime("%Y-%m-%dT%H:%M:%SZ")}},
            {"beat_saber_convert": {"$ne": True}},
        ]
        if difficulties is not None:
            search_parameters.append({"difficulties": {"$jsonContainsAny": list(difficulties)}})

        return json.dumps({"$and": search_parameters}, separators=(",", ":"))

    def get_map_page(
        self,
        page_size: int,
        page_index: int,
        since: datetime,
        difficulties: Optional[list[str]],
        timeout: float,
    ) -> MapPage:
        params = {
            "sort": SORT_NEWEST_FIRST,
            "limit": str(page_size),
            "page": str(page_index),
            "s": self.build_search_filter(since, difficulties),
        }
        try:
            data = self.http.get_json(self.map_page_url, timeout=timeout, params=params)
        except HttpError as e:
            raise CatalogApiError(
                f"Failed to get map page {page_index}: {e.message}",
                status_code=e.status_code,
                url=self.map_page_url,
            ) from e

        if not isinstance(data, dict):
            raise CatalogApiError(f"Unexpected map page format from {self.map_page_url}")
        return MapPage.from_dict(data, current_page=page_index)

    def find_by_filename(self, file_name: str, timeout: float) -> Optional[MapItem]:
        params = {"s": json.dumps({"filename": file_name}, separators=(",", ":"))}
        try:
            data = self.http.get_json(self.map_page_url, timeout=timeout, params=params)
        except HttpError as e:
            raise CatalogApiError(
                f"Failed to look up '{file_name}': {e.message}",
                status_code=e.status_code,
                url=self.map_page_url,
            ) from e

        if not isinstance(data, dict):
            return None
        page = MapPage.from_dict(data)
        if len(page.data) != 1:
            logger.debug(f"{len(page.data)} matches for '{file_name}' on {self.name}")
            return None
        return page.data[0]


class SynplicityCatalogApi:
    """Client for the api.synplicity.live beatmap catalog (the secondary source).

    Listings are filtered with plain query parameters instead of a search
    expression, and single maps are addressed by file name in the path.
    """

    name = "Synplicity"

    def __init__(self, http: HttpClient, base_url: str = "https://api.synplicity.live") -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    @property
    def map_page_url(self) -> str:
        return f"{self.base_url}/beatmaps"

    def get_download_url(self, item: MapItem) -> str:
        return f"{self.base_url}/{(item.download_url or '').lstrip('/')}"

    def build_params(
        self,
        page_size: int,
        page_index: int,
        since: datetime,
        difficulties: Optional[list[str]],
    ) -> dict[str, str]:
        """Build the listing query parameters.

        Difficulties are lowercased and sent as one comma-separated value.
        """
        params = {
            "sort": SORT_NEWEST_FIRST,
            "limit": str(page_size),
            "page": str(page_index),
            "date_after": _utc(since).strftime("%Y-%m-%dT%H:%M:%S"),
        }
        if difficulties:
            params["difficulties"] = ",".join(d.lower() for d in difficulties)
        return params

    def get_map_page(
        self,
        page_size: int,
        page_index: int,
        since: datetime,
        difficulties: Optional[list[str]],
        timeout: float,
    ) -> MapPage:
        params = self.build_params(page_size, page_index, since, difficulties)
        try:
            data = self.http.get_json(self.map_page_url, timeout=timeout, params=params)
        except HttpError as e:
            raise CatalogApiError(
                f"Failed to get map page {page_index}: {e.message}",
                status_code=e.status_code,
                url=self.map_page_url,
            ) from e

        if not isinstance(data, dict):
            raise CatalogApiError(f"Unexpected map page format from {self.map_page_url}")
        return MapPage.from_dict(data, current_page=page_index)

    def find_by_filename(self, file_name: str, timeout: float) -> Optional[MapItem]:
        url = f"{self.map_page_url}/{quote(file_name, safe='')}"
        try:
            data = self.http.get_json(url, timeout=timeout)
        except HttpError as e:
            if e.status_code == 404:
                return None
            raise CatalogApiError(
                f"Failed to look up '{file_name}': {e.message}",
                status_code=e.status_code,
                url=url,
            ) from e

        if not isinstance(data, dict):
            return None
        try:
            return MapItem.from_dict(data)
        except (TypeError, ValueError) as e:
            raise CatalogApiError(f"Failed to parse metadata for '{file_name}': {e}", url=url) from e
