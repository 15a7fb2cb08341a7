"""Tiered metadata lookup for map files: local cache, then the catalogs.

Answers "what do we know about file X". A complete cached answer is served
offline; anything else is looked up remotely and the result is cached so
repeated runs need less and less network.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from synthsync.api.client import CatalogApi, CatalogApiError, MapItem
from synthsync.store.files import atomic_write_text, read_json

logger = logging.getLogger(__name__)


@dataclass
class CachedMetadata:
    """What is known about one map file, keyed by its file name.

    Attributes:
        file_name: Map archive file name.
        hash: Content hash if known.
        downloaded_path: Local path once the file is on disk.
        published_at_sec: Publish time as a Unix timestamp, 0 if unknown.
        difficulties: Supported difficulty names, None if unknown.
        map_name: Map title.
        artist: Song artist.
        mapper: Map author.
        duration: Song duration.
    """

    file_name: str
    hash: Optional[str] = None
    downloaded_path: Optional[str] = None
    published_at_sec: int = 0
    difficulties: Optional[list[str]] = None
    map_name: Optional[str] = None
    artist: Optional[str] = None
    mapper: Optional[str] = None
    duration: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        """Whether this entry can be trusted without asking a catalog."""
        return self.published_at_sec > 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CachedMetadata":
        difficulties = data.get("difficulties")
        return cls(
            file_name=data["file_name"],
            hash=data.get("hash"),
            downloaded_path=data.get("downloaded_path"),
            published_at_sec=int(data.get("published_at_sec") or 0),
            difficulties=list(difficulties) if difficulties is not None else None,
            map_name=data.get("map_name"),
            artist=data.get("artist"),
            mapper=data.get("mapper"),
            duration=data.get("duration"),
        )

    @classmethod
    def from_map_item(cls, item: MapItem, file_name: Optional[str] = None) -> "CachedMetadata":
        """Build an entry from a catalog listing."""
        return cls(
            file_name=(file_name or item.filename or "").strip(),
            hash=item.hash,
            published_at_sec=item.get_published_at_sec(),
            difficulties=list(item.difficulties),
            map_name=item.title,
            artist=item.artist,
            mapper=item.mapper,
            duration=item.duration,
        )


@dataclass
class _CacheFile:
    metadata_by_file_name: dict[str, CachedMetadata] = field(default_factory=dict)


class MetadataCache:
    """File-name keyed metadata cache with catalog fallbacks.

    Lookups go: cached complete entry, primary catalog, secondary catalog
    (off by default), then whatever partial entry was cached. Results found
    remotely are kept in memory until ``persist`` is called.

    Example:
        >>> cache = MetadataCache(Path("map_metadata.json"), primary=ZCatalogApi(http))
        >>> cache.load()
        >>> meta = cache.get_metadata_with_fallbacks("song.synth", timeout=10)
        >>> cache.persist()
    """

    def __init__(
        self,
        cache_path: Path,
        primary: Optional[CatalogApi] = None,
        secondary: Optional[CatalogApi] = None,
        use_primary: bool = True,
        use_secondary: bool = False,
    ) -> None:
        """Initialize an empty cache.

        Args:
            cache_path: JSON file the cache is persisted to.
            primary: Catalog queried first on a cache miss.
            secondary: Catalog queried if the primary has no answer.
            use_primary: Whether the primary catalog may be queried.
            use_secondary: Whether the secondary catalog may be queried.
        """
        self.cache_path = Path(cache_path)
        self.primary = primary
        self.secondary = secondary
        self.use_primary = use_primary
        self.use_secondary = use_secondary
        self._cache = _CacheFile()
        self._has_loaded = False
        self._is_dirty = False

    def __len__(self) -> int:
        return len(self._cache.metadata_by_file_name)

    def __contains__(self, file_name: str) -> bool:
        return file_name.strip() in self._cache.metadata_by_file_name

    @property
    def is_dirty(self) -> bool:
        return self._is_dirty

    def get(self, file_name: str) -> Optional[CachedMetadata]:
        """Cached entry for ``file_name``, without any remote lookup."""
        return self._cache.metadata_by_file_name.get(file_name.strip())

    def add(self, metadata: CachedMetadata, overwrite: bool = False) -> bool:
        """Add an entry to the cache.

        Args:
            metadata: Entry to add; keyed by its trimmed file name.
            overwrite: Replace an existing entry for the same file name.

        Returns:
            True if the cache changed.
        """
        key = metadata.file_name.strip()
        metadata.file_name = key
        if not overwrite and key in self._cache.metadata_by_file_name:
            return False

        self._cache.metadata_by_file_name[key] = metadata
        self._is_dirty = True
        return True

    def load(self) -> None:
        """Load the cache from disk once. Missing or corrupt files mean an empty cache."""
        if self._has_loaded:
            return

        logger.debug("Loading map metadata...")
        data = read_json(self.cache_path)
        entries: dict[str, CachedMetadata] = {}
        if isinstance(data, dict):
            try:
                for key, value in data.get("metadata_by_file_name", {}).items():
                    entries[key] = CachedMetadata.from_dict(value)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Failed to parse map metadata cache: {e}")
                entries = {}
        elif data is not None:
            logger.error("Map metadata cache has an unexpected format; starting empty")

        self._cache = _CacheFile(metadata_by_file_name=entries)
        self._has_loaded = True
        logger.debug(f"Loaded metadata for {len(entries)} maps")

    def persist(self, force: bool = False) -> bool:
        """Write the cache to disk if it changed since the last write.

        Returns:
            True if the cache is on disk (or nothing needed writing).
        """
        if not force and not self._is_dirty:
            return True

        logger.debug("Persisting map metadata...")
        contents = json.dumps(
            {
                "metadata_by_file_name": {
                    key: value.to_dict()
                    for key, value in self._cache.metadata_by_file_name.items()
                }
            },
            indent=2,
        )
        if not atomic_write_text(contents, self.cache_path):
            logger.error("Failed to persist map metadata")
            return False

        self._is_dirty = False
        return True

    def get_metadata_with_fallbacks(
        self, file_name: str, timeout: float
    ) -> Optional[CachedMetadata]:
        """Find metadata for a map file, asking the catalogs only when needed.

        Args:
            file_name: Map archive file name.
            timeout: Timeout in seconds for each remote lookup.

        Returns:
            The best metadata available, or None if nothing is known.
        """
        file_name = file_name.strip()
        cached = self.get(file_name)
        # A zero publish time means the entry came from partial local data
        if cached is not None and cached.is_complete:
            return cached

        metadata: Optional[CachedMetadata] = None

        if self.use_primary and self.primary is not None:
            metadata = self._lookup(self.primary, file_name, timeout)

        if metadata is None and self.use_secondary and self.secondary is not None:
            metadata = self._lookup(self.secondary, file_name, timeout)

        if metadata is not None:
            if cached is not None and metadata.downloaded_path is None:
                metadata.downloaded_path = cached.downloaded_path
            self.add(metadata, overwrite=True)
            return metadata

        return cached

    def _lookup(
        self, catalog: CatalogApi, file_name: str, timeout: float
    ) -> Optional[CachedMetadata]:
        try:
            item = catalog.find_by_filename(file_name, timeout=timeout)
        except CatalogApiError as e:
            logger.error(f"Failed to get metadata from {catalog.name} for map '{file_name}': {e}")
            return None

        if item is None:
            return None
        return CachedMetadata.from_map_item(item, file_name=file_name)
