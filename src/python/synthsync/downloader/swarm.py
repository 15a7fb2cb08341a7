"""Swarm map source: download maps from the map torrent.

The torrent holds every published map but no metadata beyond file names, so
publish times come from the metadata cache and the local timestamp mappings.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from synthsync.config import MAP_EXTENSION, SyncConfig
from synthsync.library import LocalLibrary, parse_local_map
from synthsync.store.files import delete_file, empty_directory, write_bytes
from synthsync.store.metadata_cache import CachedMetadata, MetadataCache
from synthsync.swarm.client import (
    SessionFile,
    SessionState,
    SwarmClient,
    SwarmDescriptor,
    SwarmError,
    SwarmSession,
)
from synthsync.swarm.locator import LocatorRepo
from synthsync.timestamps import TimestampMappings

logger = logging.getLogger(__name__)


class SwarmSourceState(Enum):
    """Lifecycle of a swarm source, from descriptor resolution to the end of a download."""

    UNINITIALIZED = "uninitialized"
    RESOLVING = "resolving"
    READY = "ready"
    SELECTING = "selecting"
    DOWNLOADING = "downloading"
    SEEDING = "seeding"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class SwarmDownloadResult:
    """Outcome of moving finished swarm downloads into the collection.

    Attributes:
        selected: Files marked for download.
        already_downloaded: Files skipped because they are already local.
        moved: Files parsed, moved and registered.
        deleted: Unparsable or partial files deleted.
        skipped: Files that were missing or couldn't be moved.
    """

    selected: int = 0
    already_downloaded: int = 0
    moved: int = 0
    deleted: int = 0
    skipped: int = 0


class SwarmSource:
    """Downloads new maps from the torrent, filtered by time and difficulty.

    Example:
        >>> source = SwarmSource(LibtorrentClient(), locator_repo, library, cache, config)
        >>> ok = source.download_maps(since, ["Expert", "Master"])
    """

    def __init__(
        self,
        client: SwarmClient,
        locator_repo: LocatorRepo,
        library: LocalLibrary,
        metadata_cache: MetadataCache,
        config: SyncConfig,
    ) -> None:
        self.client = client
        self.locator_repo = locator_repo
        self.library = library
        self.metadata_cache = metadata_cache
        self.config = config
        self.state = SwarmSourceState.UNINITIALIZED
        self.descriptor: Optional[SwarmDescriptor] = None
        self.result = SwarmDownloadResult()
        self._maps_by_file_name: dict[str, CachedMetadata] = {}

    @property
    def name(self) -> str:
        return "Swarm"

    @property
    def maps_by_file_name(self) -> dict[str, CachedMetadata]:
        """Metadata for every map in the descriptor, keyed by file name."""
        return self._maps_by_file_name

    def initialize(self) -> bool:
        """Empty the download dir, resolve the descriptor and refresh map metadata.

        Returns:
            True if the source is ready to download.
        """
        self.state = SwarmSourceState.RESOLVING
        try:
            # Start with a clean download dir
            logger.debug(f"Emptying download directory at {self.config.swarm_download_dir}")
            empty_directory(self.config.swarm_download_dir)
        except OSError as e:
            logger.error(f"Failed to clean download dir: {e}")
            self.state = SwarmSourceState.ERROR
            return False

        self.metadata_cache.load()
        mappings = self.library.get_local_timestamp_mappings()

        descriptor = self.resolve_descriptor()
        if descriptor is None:
            self.state = SwarmSourceState.ERROR
            return False

        self.descriptor = descriptor
        self.refresh_map_metadata(descriptor, mappings)
        self.metadata_cache.persist()
        self.state = SwarmSourceState.READY
        return True

    def resolve_descriptor(self) -> Optional[SwarmDescriptor]:
        """The cached descriptor if still valid, otherwise one fetched via the locator."""
        # Resolving the locator first deletes the cached descriptor if it's stale
        locator = self.locator_repo.get_locator()

        descriptor = self._load_cached_descriptor()
        if descriptor is not None:
            logger.debug("Using cached descriptor")
            return descriptor

        if locator is None:
            logger.error("No locator available; can't get descriptor")
            return None

        try:
            data = self.client.fetch_descriptor(locator, timeout=self.config.descriptor_timeout)
            descriptor = self.client.load_descriptor(data)
        except SwarmError as e:
            logger.error(f"Failed to get descriptor from locator: {e}")
            return None

        if not write_bytes(data, self.config.cached_descriptor_file):
            logger.error("Failed to cache descriptor")
        return descriptor

    def _load_cached_descriptor(self) -> Optional[SwarmDescriptor]:
        cache_file = self.config.cached_descriptor_file
        if not cache_file.exists():
            return None

        try:
            return self.client.load_descriptor(cache_file.read_bytes())
        except (OSError, SwarmError) as e:
            logger.error(f"Cached descriptor unusable, refetching: {e}")
            return None

    def refresh_map_metadata(self, descriptor: SwarmDescriptor, mappings: TimestampMappings) -> int:
        """Build or refresh the metadata entry for each map in the descriptor.

        Returns:
            Number of maps found.
        """
        logger.debug(f"Found {len(descriptor.files)} files in descriptor")
        self._maps_by_file_name = {}

        for count, file in enumerate(descriptor.files, start=1):
            file_name = file.name
            if not file_name.endswith(MAP_EXTENSION):
                logger.debug(f"Skipping non-map file {file.path}")
                continue
            if file_name in self._maps_by_file_name:
                continue

            metadata = self.metadata_cache.get(file_name) or CachedMetadata(file_name=file_name)
            metadata.downloaded_path = str(self.library.final_path_for(file_name))
            if not metadata.is_complete:
                published_at = mappings.get_for_filename(file_name)
                if published_at is not None:
                    metadata.published_at_sec = int(published_at.timestamp())

            self.metadata_cache.add(metadata, overwrite=True)
            self._maps_by_file_name[file_name] = metadata

            if count % 500 == 0:
                logger.debug(f"Processed {count}/{len(descriptor.files)}")

        logger.debug(f"Done processing files. Found {len(self._maps_by_file_name)} maps")
        return len(self._maps_by_file_name)

    def should_download(
        self, metadata: CachedMetadata, since_sec: int, difficulties: Optional[set[str]]
    ) -> bool:
        """Whether a map passes the download filters."""
        if self._is_downloaded(metadata):
            return False

        if metadata.published_at_sec < since_sec:
            return False

        if difficulties is not None:
            if metadata.difficulties is None:
                logger.debug(f"No difficulties available in metadata for {metadata.file_name}; skipping")
                return False
            if not difficulties.intersection(metadata.difficulties):
                return False

        return True

    def _is_downloaded(self, metadata: CachedMetadata) -> bool:
        if metadata.hash and self.library.store.get_from_hash(metadata.hash) is not None:
            return True
        return bool(metadata.downloaded_path) and Path(metadata.downloaded_path).exists()

    def download_maps(
        self,
        since: datetime,
        difficulties: Optional[list[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Download every map in the torrent that passes the filters.

        Args:
            since: Only maps published at or after this time.
            difficulties: Difficulty names to include; None for all.
            cancel_event: Set from another thread to abort the download.

        Returns:
            True if the download finished (or nothing needed downloading).
        """
        if self.descriptor is None and not self.initialize():
            return False

        self.result = SwarmDownloadResult()
        self.state = SwarmSourceState.SELECTING
        try:
            session = self.client.open_session(self.descriptor, self.config.swarm_download_dir)
        except SwarmError as e:
            logger.error(f"Failed to open swarm session: {e}")
            self.state = SwarmSourceState.ERROR
            return False

        try:
            selected = self._select_files(session, since, difficulties)
            if not selected:
                logger.debug("No maps marked for download; up-to-date")
                self.state = SwarmSourceState.READY
                return True

            logger.debug(f"Starting {len(selected)} download(s)...")
            self.state = SwarmSourceState.DOWNLOADING
            finished = self._wait_for_download(session, cancel_event or threading.Event())
        finally:
            logger.debug("Stopping session...")
            session.stop()
            session.close()

        if not finished:
            logger.error("Download failed!")
            return False

        logger.debug("Done downloading. Moving files...")
        self._collect_downloads(selected)
        return True

    def _select_files(
        self, session: SwarmSession, since: datetime, difficulties: Optional[list[str]]
    ) -> list[SessionFile]:
        since_sec = int(since.timestamp())
        wanted = set(difficulties) if difficulties is not None else None

        selected = []
        for file in session.files:
            metadata = self._maps_by_file_name.get(file.name)
            if metadata is None:
                continue
            if self._is_downloaded(metadata):
                self.result.already_downloaded += 1
                continue
            if not self.should_download(metadata, since_sec, wanted):
                continue

            logger.debug(f"Marking {file.name} for download")
            session.select(file)
            selected.append(file)

        logger.debug(f"Already downloaded {self.result.already_downloaded} maps; skipping those")
        self.result.selected = len(selected)
        return selected

    def _wait_for_download(self, session: SwarmSession, cancel_event: threading.Event) -> bool:
        """Poll the session until it finishes, fails, times out or is cancelled.

        Returns:
            True if every selected file was received.
        """
        session.start()
        deadline = time.monotonic() + self.config.swarm_timeout
        last_progress = -1.0

        logger.debug("Waiting for download...")
        while True:
            state = session.state()
            progress = session.progress()

            if state == SessionState.DOWNLOADING and abs(progress - last_progress) >= 1:
                logger.debug(f"  Progress: {int(progress)}%")
                last_progress = progress

            if state == SessionState.ERROR:
                logger.error(f"Error while downloading! {session.error()}")
                self.state = SwarmSourceState.ERROR
                return False

            if state == SessionState.STOPPED:
                logger.debug(f"Stopped. Partial progress is {progress}")
                self.state = SwarmSourceState.STOPPED
                return progress >= 100

            if state == SessionState.SEEDING:
                logger.debug("Seeding! Marking as done to stop")
                self.state = SwarmSourceState.SEEDING
                return True

            if cancel_event.wait(self.config.swarm_poll_interval):
                logger.error("Download cancelled")
                self.state = SwarmSourceState.STOPPED
                return False

            if time.monotonic() > deadline:
                logger.error(f"Download timed out after {self.config.swarm_timeout}s")
                self.state = SwarmSourceState.STOPPED
                return False

    def _collect_downloads(self, selected: list[SessionFile]) -> None:
        store = self.library.store
        for file in selected:
            complete_path = Path(file.complete_path)
            incomplete_path = Path(file.incomplete_path)

            if complete_path.exists():
                record = parse_local_map(complete_path)
                if record is None:
                    logger.error(f"Failed to parse at {complete_path}; deleting and skipping")
                    delete_file(complete_path)
                    self.result.deleted += 1
                    continue

                metadata = self._maps_by_file_name.get(file.name)
                published_at = None
                if metadata is not None and metadata.published_at_sec > 0:
                    published_at = datetime.fromtimestamp(metadata.published_at_sec, tz=timezone.utc)

                final_path = self.library.move_into_library(complete_path, published_at)
                if final_path is None:
                    logger.error(f"Failed to move file {complete_path} to custom songs dir! Skipping")
                    self.result.skipped += 1
                    continue

                record.file_path = str(final_path)
                if record.published_at_sec == 0 and metadata is not None:
                    record.published_at_sec = metadata.published_at_sec
                store.add_map(record)

                if metadata is not None:
                    metadata.hash = record.hash
                    metadata.downloaded_path = str(final_path)
                    self.metadata_cache.add(metadata, overwrite=True)
                self.result.moved += 1

            elif incomplete_path.exists():
                logger.error(f"Incomplete download at {incomplete_path}; deleting")
                delete_file(incomplete_path)
                self.result.deleted += 1

            else:
                logger.error(f"File {file.path} download failed (not found); skipping")
                self.result.skipped += 1

        logger.debug(
            f"{self.result.moved} files moved, {self.result.deleted} deleted, "
            f"{self.result.skipped} skipped"
        )

        if self.result.moved > 0:
            store.save()
            self.library.apply_local_mappings(self.library.get_local_timestamp_mappings())
        self.metadata_cache.persist()
