"""Content-addressed registry of the maps already on disk.

The store is the single source of truth for "do we already have this map".
It is loaded once per run, mutated in memory, and written back as a whole
JSON document through a temp-file-then-rename save.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from synthsync.store.files import atomic_write_text, read_json

logger = logging.getLogger(__name__)


@dataclass
class MapRecord:
    """A map file the user has locally.

    Attributes:
        hash: Content hash, stable across re-downloads.
        file_path: Current location of the map file.
        published_at_sec: Publish time on the origin site (0 if unknown).
        id: Catalog id if known.
        title: Map title.
        difficulties: Difficulty names the map supports.
        artist: Song artist.
        mapper: Map author.
        duration: Song duration as reported by the catalog.
    """

    hash: str
    file_path: str
    published_at_sec: int = 0
    id: int = 0
    title: Optional[str] = None
    difficulties: list[str] = field(default_factory=list)
    artist: Optional[str] = None
    mapper: Optional[str] = None
    duration: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert record to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MapRecord":
        """Create a record from a dictionary.

        Raises:
            KeyError: If ``hash`` or ``file_path`` is missing.
        """
        return cls(
            hash=data["hash"],
            file_path=data["file_path"],
            published_at_sec=int(data.get("published_at_sec") or 0),
            id=int(data.get("id") or 0),
            title=data.get("title"),
            difficulties=list(data.get("difficulties") or []),
            artist=data.get("artist"),
            mapper=data.get("mapper"),
            duration=data.get("duration"),
        )


class LocalStore:
    """Registry of local maps, indexed by hash and by file path.

    At most one record exists per hash and per path: adding a record that
    collides on either evicts the earlier record first.

    Example:
        >>> store = LocalStore(Path("/data/SRQD_local.db"))
        >>> store.load()
        >>> store.add_map(MapRecord(hash="abc", file_path="/maps/a.synth"))
        >>> store.save()
        True
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize an empty store backed by ``db_path``.

        Args:
            db_path: Canonical JSON file the store is saved to.
        """
        self.db_path = Path(db_path)
        self.last_fetch_timestamp_sec = 0
        self._maps: list[MapRecord] = []
        self._by_path: dict[str, MapRecord] = {}
        self._by_hash: dict[str, MapRecord] = {}
        self._is_dirty = False

    def __len__(self) -> int:
        return len(self._maps)

    @property
    def is_dirty(self) -> bool:
        """Whether the registry changed since it was last saved."""
        return self._is_dirty

    def get_from_path(self, file_path: str) -> Optional[MapRecord]:
        """Record stored at ``file_path``, if any."""
        return self._by_path.get(str(file_path))

    def get_from_hash(self, map_hash: str) -> Optional[MapRecord]:
        """Record with content hash ``map_hash``, if any."""
        return self._by_hash.get(map_hash)

    def get_local_maps_copy(self) -> list[MapRecord]:
        """Snapshot of every record, in insertion order."""
        return list(self._maps)

    def add_map(self, record: MapRecord) -> None:
        """Add a record, replacing any record with the same path or hash."""
        record.file_path = str(record.file_path)

        existing = self._by_path.get(record.file_path)
        if existing is not None:
            logger.debug(f"Removing map with existing path {record.file_path}")
            self._remove(existing)

        existing = self._by_hash.get(record.hash)
        if existing is not None:
            logger.debug(f"Removing map with matching hash {record.hash}")
            self._remove(existing)

        logger.debug(f"Adding map {Path(record.file_path).stem}")
        self._maps.append(record)
        self._by_path[record.file_path] = record
        self._by_hash[record.hash] = record
        self._is_dirty = True

    def remove_missing_hashes(self, present_hashes: set[str]) -> int:
        """Drop every record whose hash is not in ``present_hashes``.

        Returns:
            Number of records removed.
        """
        to_remove = [record for record in self._maps if record.hash not in present_hashes]
        for record in to_remove:
            logger.debug(f"db map not found in filesystem; removing {Path(record.file_path).name}")
            self._remove(record)

        if to_remove:
            self._is_dirty = True
        return len(to_remove)

    def _remove(self, record: MapRecord) -> None:
        """Drop a record from the list and both indices."""
        self._maps.remove(record)
        if self._by_path.get(record.file_path) is record:
            del self._by_path[record.file_path]
        if self._by_hash.get(record.hash) is record:
            del self._by_hash[record.hash]

    def set_last_fetch_time(self, when: datetime) -> None:
        """Remember the start time of the last successful full sync."""
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self.last_fetch_timestamp_sec = int(when.timestamp())
        self._is_dirty = True

    def get_last_fetch_time(self) -> datetime:
        """Start time of the last successful sync; the epoch if never synced."""
        return datetime.fromtimestamp(self.last_fetch_timestamp_sec, tz=timezone.utc)

    def to_dict(self) -> dict:
        """Convert the registry to the on-disk JSON layout."""
        return {
            "maps": [record.to_dict() for record in self._maps],
            "last_fetch_timestamp_sec": self.last_fetch_timestamp_sec,
        }

    def save(self, force: bool = False) -> bool:
        """Write the store to disk if anything changed.

        Args:
            force: Save even if nothing changed.

        Returns:
            True if the store is on disk (or nothing needed saving).
        """
        if not force and not self._is_dirty:
            logger.debug("Skipping save (not dirty)")
            return True

        logger.debug(f"Saving db ({len(self._maps)} maps)")
        try:
            contents = json.dumps(self.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize db: {e}")
            return False

        if not atomic_write_text(contents, self.db_path):
            logger.error("Failed to save db")
            return False

        self._is_dirty = False
        return True

    def load(self) -> None:
        """Load the store from disk, creating an empty file if there is none.

        A corrupt or unreadable file leaves the store empty rather than
        failing.
        """
        if not self.db_path.exists():
            logger.debug("DB doesn't exist; creating...")
            self.save(force=True)

        logger.debug("Loading database...")
        data = read_json(self.db_path)
        if not isinstance(data, dict):
            logger.error("Failed to load local database!")
            return

        try:
            records = [MapRecord.from_dict(item) for item in data.get("maps", [])]
            last_fetch = int(data.get("last_fetch_timestamp_sec") or 0)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to load local database: {e}")
            return

        self._maps = []
        self._by_path.clear()
        self._by_hash.clear()
        self.last_fetch_timestamp_sec = last_fetch
        for record in records:
            self.add_map(record)
        self._is_dirty = False
        logger.debug(f"DB loaded ({len(self._maps)} maps)")
