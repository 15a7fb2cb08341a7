"""Offline map -> publish time mappings.

The mapping file is a JSON list of catalog items (at least ``hash``,
``filename`` and ``published_at``) saved while a catalog was reachable. It
lets publish times be recovered for maps that arrive through the torrent,
which carries no timestamps of its own.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from synthsync.api.client import MapItem
from synthsync.store.files import read_json

logger = logging.getLogger(__name__)


class TimestampMappings:
    """Publish times looked up by map hash or by file name."""

    def __init__(self) -> None:
        self.items: list[MapItem] = []
        self._by_hash: dict[str, datetime] = {}
        self._by_filename: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self.items)

    def add(self, item: MapItem) -> None:
        """Record an item's publish time. Items without a hash are ignored."""
        if not item.hash:
            return

        self.items.append(item)

        published_at = item.get_published_at()
        if published_at is None:
            return

        if item.hash in self._by_hash:
            logger.error(
                f"Duplicate entry in file for hash {item.hash}. "
                f"Times are {published_at} and {self._by_hash[item.hash]}"
            )
            return
        self._by_hash[item.hash] = published_at

        if item.filename:
            self._by_filename.setdefault(item.filename.strip(), published_at)

    def get_for_hash(self, map_hash: str) -> Optional[datetime]:
        return self._by_hash.get(map_hash)

    def get_for_filename(self, file_name: str) -> Optional[datetime]:
        return self._by_filename.get(file_name.strip())

    @classmethod
    def load(cls, mapping_path: Path) -> "TimestampMappings":
        """Load mappings from a file.

        Returns:
            The mappings; empty if the file is missing or unreadable.
        """
        mappings = cls()
        if not mapping_path.exists():
            logger.error("No mapping file found!")
            return mappings

        data = read_json(mapping_path)
        if not isinstance(data, list) or not data:
            logger.error("Failed to read mappings from file!")
            return mappings

        for entry in data:
            try:
                mappings.add(MapItem.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.debug(f"Skipping bad mapping entry: {e}")

        logger.debug(f"Loaded {len(mappings)} timestamp mappings")
        return mappings
