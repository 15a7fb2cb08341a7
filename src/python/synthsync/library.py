"""The user's local map collection: the content directory and its registry.

A map file is a zip archive with the ``.synth`` extension. Maps downloaded
from the catalogs carry a ``synthriderz.meta.json`` entry with their catalog
id and content hash, which is what ties a file on disk to a ``MapRecord``.
"""

import json
import logging
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from synthsync.api.client import MapItem, parse_published_at
from synthsync.config import MAP_EXTENSION, SyncConfig
from synthsync.store.files import move_file_overwrite, set_file_times
from synthsync.store.local_store import LocalStore, MapRecord
from synthsync.timestamps import TimestampMappings

logger = logging.getLogger(__name__)

# Metadata entry stored inside each map archive
METADATA_ENTRY_NAME = "synthriderz.meta.json"

# Save partial progress this often while scanning the content directory
REFRESH_SAVE_INTERVAL = 100


def _record_from_item(item: MapItem, file_path: Path, map_hash: Optional[str] = None) -> MapRecord:
    return MapRecord(
        hash=map_hash or item.hash or "",
        file_path=str(file_path),
        published_at_sec=item.get_published_at_sec(),
        id=item.id,
        title=item.title,
        difficulties=list(item.difficulties),
        artist=item.artist,
        mapper=item.mapper,
        duration=item.duration,
    )


def parse_local_map(file_path: Path, map_item: Optional[MapItem] = None) -> Optional[MapRecord]:
    """Read the registry record for a map archive.

    If the archive has no metadata entry but ``map_item`` carries a catalog id
    and hash, the entry is written into the archive so the file can be
    recognised on later scans.

    Args:
        file_path: Path to the ``.synth`` archive.
        map_item: Catalog listing the file was downloaded from, if any.

    Returns:
        The record, or None if the file is not a usable map.
    """
    file_path = Path(file_path)
    try:
        with zipfile.ZipFile(file_path, "r") as zf:
            has_metadata = METADATA_ENTRY_NAME in zf.namelist()
            raw_metadata = zf.read(METADATA_ENTRY_NAME) if has_metadata else None
    except (zipfile.BadZipFile, OSError, KeyError) as e:
        logger.error(f"Failed to parse local map {file_path}: {e}")
        return None

    if raw_metadata is not None:
        try:
            metadata = json.loads(raw_metadata)
        except ValueError as e:
            logger.error(f"Invalid {METADATA_ENTRY_NAME} in {file_path.name}: {e}")
            return None

        if not isinstance(metadata, dict) or not metadata.get("hash"):
            logger.error(f"No hash in {METADATA_ENTRY_NAME} of {file_path.name}")
            return None

        if map_item is not None:
            return _record_from_item(map_item, file_path, map_hash=str(metadata["hash"]))

        published_at = parse_published_at(metadata.get("published_at"))
        return MapRecord(
            hash=str(metadata["hash"]),
            file_path=str(file_path),
            published_at_sec=int(published_at.timestamp()) if published_at else 0,
            id=int(metadata.get("id") or 0),
            title=metadata.get("title"),
            difficulties=list(metadata.get("difficulties") or []),
            artist=metadata.get("artist"),
            mapper=metadata.get("mapper"),
            duration=metadata.get("duration"),
        )

    logger.debug(f"Missing {METADATA_ENTRY_NAME} in map {file_path.name}")
    if map_item is None or not map_item.hash or map_item.id <= 0:
        logger.error(f"Missing {METADATA_ENTRY_NAME} in {file_path.name}. Refetch from catalog.")
        return None

    logger.info(f"Creating missing {METADATA_ENTRY_NAME} for {file_path.name}")
    try:
        with zipfile.ZipFile(file_path, "a") as zf:
            zf.writestr(
                METADATA_ENTRY_NAME,
                json.dumps({"id": map_item.id, "hash": map_item.hash}, separators=(",", ":")),
            )
    except (zipfile.BadZipFile, OSError) as e:
        logger.error(f"Failed to create missing metadata entry: {e}")
        return None

    return _record_from_item(map_item, file_path)


class LocalLibrary:
    """Keeps the local registry consistent with the content directory.

    Example:
        >>> library = LocalLibrary(config, LocalStore(config.local_store_file))
        >>> library.initialize()
        >>> new_items = library.filter_out_existing_maps(catalog_items)
    """

    def __init__(self, config: SyncConfig, store: LocalStore) -> None:
        self.config = config
        self.store = store

    @property
    def maps_dir(self) -> Path:
        return self.config.custom_songs_dir

    def get_custom_map_paths(self) -> list[Path]:
        """All map files in the content directory, sorted by name."""
        if not self.maps_dir.exists():
            return []
        try:
            return sorted(self.maps_dir.glob(f"*{MAP_EXTENSION}"))
        except OSError as e:
            logger.error(f"Failed to get files: {e}")
            return []

    def final_path_for(self, file_name: str) -> Path:
        """Where a map with this file name lives once it is in the collection."""
        return self.maps_dir / Path(file_name.strip()).name

    def initialize(self) -> None:
        """Load the registry and reconcile it with the content directory.

        Files the registry doesn't know are parsed and added; records whose
        file is gone are removed. Progress is saved every
        ``REFRESH_SAVE_INTERVAL`` files.
        """
        self.store.load()

        if not self.maps_dir.exists():
            logger.error("Custom maps directory doesn't exist! Creating...")
            self.maps_dir.mkdir(parents=True, exist_ok=True)

        files = self.get_custom_map_paths()
        logger.debug(f"Updating database with map files ({len(files)} found)...")

        local_hashes: set[str] = set()
        for count, file_path in enumerate(files, start=1):
            record = self.store.get_from_path(str(file_path))
            if record is None:
                record = parse_local_map(file_path)
                if record is None:
                    logger.error(f"Failed to parse map at {file_path}")
                    continue
                self.store.add_map(record)
            local_hashes.add(record.hash)

            if count % REFRESH_SAVE_INTERVAL == 0:
                logger.debug(f"Processed {count}/{len(files)}...")
                self.store.save()

        logger.debug(f"{len(files)} local files processed")
        logger.debug("Removing database entries that aren't on the local file system...")
        removed = self.store.remove_missing_hashes(local_hashes)
        if removed:
            logger.info(f"Removed {removed} maps no longer on disk")

        if not self.store.save():
            logger.error("Failed to save db")

    def filter_out_existing_maps(self, items: Iterable[MapItem]) -> list[MapItem]:
        """Items that have a hash and are not in the registry yet."""
        logger.debug(f"{len(self.store)} local maps found")
        return [item for item in items if item.hash and self.store.get_from_hash(item.hash) is None]

    def add_local_map(self, file_path: Path, map_item: Optional[MapItem] = None) -> Optional[MapRecord]:
        """Parse a map file and register it.

        Returns:
            The registered record, or None if the file couldn't be parsed.
        """
        record = parse_local_map(file_path, map_item)
        if record is None:
            logger.error(f"Failed to parse map at {file_path}")
            return None

        self.store.add_map(record)
        return record

    def move_into_library(self, src_path: Path, published_at: Optional[datetime] = None) -> Optional[Path]:
        """Move a downloaded map into the content directory.

        Args:
            src_path: Downloaded file.
            published_at: Publish time to stamp on the file, if known.

        Returns:
            Final path of the map, or None if the move failed.
        """
        dest_path = self.final_path_for(src_path.name)
        if not move_file_overwrite(src_path, dest_path):
            return None

        if published_at is not None:
            set_file_times(dest_path, published_at)
        return dest_path

    def get_local_timestamp_mappings(self) -> TimestampMappings:
        return TimestampMappings.load(self.config.timestamp_mapping_file)

    def apply_local_mappings(self, mappings: TimestampMappings) -> int:
        """Re-stamp local files with the publish times in ``mappings``.

        Returns:
            Number of files updated.
        """
        updated = 0
        for item in mappings.items:
            record = self.store.get_from_hash(item.hash or "")
            if record is None:
                continue

            published_at = mappings.get_for_hash(record.hash)
            if published_at is None:
                logger.error(f"Couldn't get date modified for {record.hash}")
                continue

            if set_file_times(Path(record.file_path), published_at):
                logger.debug(f"Updated date modified for {Path(record.file_path).stem} to {published_at}")
                updated += 1
            else:
                logger.error(f"Failed to update date modified for {record.file_path} ({record.hash})")
        return updated
