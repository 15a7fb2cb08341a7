"""Catalog data model and the interface every catalog client implements.

A catalog is a remote, paginated index of downloadable maps. The concrete
clients live in ``synthsync.api.catalogs``; the sync engine only depends on
the ``CatalogApi`` protocol defined here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

# Fractional seconds longer than microseconds, which fromisoformat rejects
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")
# Fractional seconds that are not 3 or 6 digits long
_ODD_FRACTION = re.compile(r"\.(\d{1,5})(?=[+-]|$)")


class CatalogApiError(Exception):
    """Raised when a catalog request fails or returns an unusable response.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code if available.
        url: The URL that was being requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.url = url


def parse_published_at(value: Optional[str]) -> Optional[datetime]:
    """Leniently parse an ISO-8601-like timestamp from a catalog.

    Example input: ``2023-01-20T04:54:13.807Z``. Naive values are taken to be
    UTC.

    Returns:
        An aware UTC datetime, or None if the value is missing or unparsable.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = text.replace(" ", "T", 1)
    text = _LONG_FRACTION.sub(r"\1", text)
    text = _ODD_FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0"), text)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class MapItem:
    """A single map as listed by a catalog.

    Attributes:
        id: Catalog id of the map.
        hash: Content hash of the map file.
        title: Map title.
        download_url: Catalog-relative download path.
        published_at: Publish time as sent by the catalog (may be unparsable).
        filename: File name of the map archive.
        difficulties: Difficulty names the map supports.
        mapper: Map author.
        duration: Song duration.
        artist: Song artist.
    """

    id: int = 0
    hash: Optional[str] = None
    title: Optional[str] = None
    download_url: Optional[str] = None
    published_at: Optional[str] = None
    filename: Optional[str] = None
    difficulties: list[str] = field(default_factory=list)
    mapper: Optional[str] = None
    duration: Optional[str] = None
    artist: Optional[str] = None

    def get_published_at(self) -> Optional[datetime]:
        return parse_published_at(self.published_at)

    def get_published_at_sec(self) -> int:
        """Publish time as a Unix timestamp, 0 when unknown."""
        published_at = self.get_published_at()
        return int(published_at.timestamp()) if published_at else 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "hash": self.hash,
            "title": self.title,
            "download_url": self.download_url,
            "published_at": self.published_at,
            "filename": self.filename,
            "difficulties": list(self.difficulties),
            "mapper": self.mapper,
            "duration": self.duration,
            "artist": self.artist,
        }

    @classmethod
    def from_dict(cls, data: dict) -> MapItem:
        """Create a map item from a catalog JSON object.

        Raises:
            TypeError: If ``data`` is not a mapping.
            ValueError: If ``id`` is not an integer.
        """
        if not isinstance(data, dict):
            raise TypeError(f"Expected a JSON object, got {type(data).__name__}")

        duration = data.get("duration")
        return cls(
            id=int(data.get("id") or 0),
            hash=data.get("hash"),
            title=data.get("title"),
            download_url=data.get("download_url"),
            published_at=data.get("published_at"),
            filename=data.get("filename"),
            difficulties=[str(d) for d in (data.get("difficulties") or [])],
            mapper=data.get("mapper"),
            duration=str(duration) if duration is not None else None,
            artist=data.get("artist"),
        )


@dataclass
class MapPage:
    """One page of a catalog listing.

    Attributes:
        data: Maps on this page.
        page_count: Total number of pages the catalog reports.
        current_page: Page number that was requested (1-indexed).
    """

    data: list[MapItem]
    page_count: int
    current_page: int = 1

    @classmethod
    def from_dict(cls, data: dict, current_page: int = 1) -> MapPage:
        """Parse a catalog page response.

        Raises:
            CatalogApiError: If the response structure is invalid.
        """
        try:
            items = [MapItem.from_dict(item) for item in data.get("data", [])]
            page_count = int(data.get("pagecount", 1))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CatalogApiError(f"Failed to parse map page: {e}") from e

        return cls(data=items, page_count=page_count, current_page=current_page)


class CatalogApi(Protocol):
    """What the sync engine needs from a remote catalog."""

    name: str

    def get_map_page(
        self,
        page_size: int,
        page_index: int,
        since: datetime,
        difficulties: Optional[list[str]],
        timeout: float,
    ) -> MapPage:
        """Fetch one page of maps published after ``since``, newest first.

        Raises:
            CatalogApiError: If the page cannot be fetched or parsed.
        """
        ...

    def get_download_url(self, item: MapItem) -> str:
        """Absolute URL to download ``item`` from."""
        ...

    def find_by_filename(self, file_name: str, timeout: float) -> Optional[MapItem]:
        """Look up the single map with exactly this file name.

        Returns:
            The map, or None if the catalog has no unique match.

        Raises:
            CatalogApiError: If the request fails.
        """
        ...
