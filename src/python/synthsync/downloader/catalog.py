"""Catalog map source: list new maps from a catalog and download them.

Downloads run on a small thread pool, but only the network fetch and the
temp file write happen on worker threads. Moving files into the collection
and updating the registry happen on the calling thread, in the order the
downloads were started.
"""

import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from synthsync.api.client import CatalogApi, CatalogApiError, MapItem
from synthsync.api.http import HttpClient
from synthsync.config import MAP_EXTENSION, SyncConfig
from synthsync.library import LocalLibrary
from synthsync.store.files import empty_directory, set_file_times, write_bytes

logger = logging.getLogger(__name__)


@dataclass
class DownloadProgress:
    """Progress information for one catalog run.

    Attributes:
        total: Number of maps that needed downloading.
        completed: Number of maps downloaded and registered.
        failed: Number of maps that failed.
        skipped: Number of listed maps already present locally.
    """

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def remaining(self) -> int:
        """Number of maps remaining to download."""
        return self.total - self.completed - self.failed


class CatalogSource:
    """Downloads every new map from one catalog.

    Example:
        >>> source = CatalogSource(ZCatalogApi(http), library, http, config)
        >>> ok = source.download_since(datetime(2024, 1, 1, tzinfo=timezone.utc), ["Expert"])
        >>> print(source.progress.completed)
    """

    def __init__(
        self,
        catalog: CatalogApi,
        library: LocalLibrary,
        http: HttpClient,
        config: SyncConfig,
        progress_callback: Optional[Callable[[DownloadProgress], None]] = None,
    ) -> None:
        """Initialize the source.

        Args:
            catalog: Catalog to list and download from.
            library: Local collection new maps are added to.
            http: Transport for the map downloads.
            config: Shared settings (limits, timeouts, directories).
            progress_callback: Optional callback for progress updates.
        """
        self.catalog = catalog
        self.library = library
        self.http = http
        self.config = config
        self.progress_callback = progress_callback
        self.progress = DownloadProgress()

    @property
    def name(self) -> str:
        return self.catalog.name

    @property
    def download_dir(self) -> Path:
        """Scratch directory downloads are written to before the move."""
        return self.config.temp_dir / "Download"

    def download_since(self, since: datetime, difficulties: Optional[list[str]]) -> bool:
        """Download all maps published after ``since`` with any of ``difficulties``.

        Args:
            since: Only maps published after this time.
            difficulties: Difficulty names to include; None for all.

        Returns:
            True if the catalog was listed (even if nothing needed
            downloading), False if the catalog couldn't be used.
        """
        logger.info(f"Getting maps from {self.name} after {since.isoformat()}...")
        self.progress = DownloadProgress()

        try:
            logger.debug(f"(re)Creating temp directory at {self.download_dir}")
            empty_directory(self.download_dir)
        except OSError as e:
            logger.error(f"Failed to delete or create temp dir: {e}")
            return False

        maps_from_site = self.get_maps_since(since, difficulties)
        if maps_from_site is None:
            return False
        logger.info(f"{len(maps_from_site)} maps found since given time for given difficulties.")

        to_download = self.library.filter_out_existing_maps(self._dedupe(maps_from_site))
        self.progress.skipped = len(maps_from_site) - len(to_download)
        self.progress.total = len(to_download)
        logger.info(f"{len(to_download)} new files to download...")
        self._report()

        store = self.library.store
        limit = max(1, self.config.parallel_download_limit)
        in_flight: deque[tuple[MapItem, Future]] = deque()

        with ThreadPoolExecutor(max_workers=limit) as executor:
            for count, item in enumerate(to_download, start=1):
                while len(in_flight) >= limit:
                    self._finish_download(*in_flight.popleft())

                logger.debug(f"{count}/{len(to_download)}: {item.id} {item.title}")
                in_flight.append((item, executor.submit(self._fetch_to_temp, item)))

                if count % self.config.checkpoint_interval == 0:
                    logger.debug("Stopping new queued downloads...")
                    while in_flight:
                        self._finish_download(*in_flight.popleft())
                    logger.debug("Saving current state to db...")
                    store.save(force=True)
                    logger.debug("Resuming...")

            logger.debug("Waiting for last downloads...")
            while in_flight:
                self._finish_download(*in_flight.popleft())

        store.save(force=True)
        logger.info(
            f"{self.name}: {self.progress.completed} downloaded, "
            f"{self.progress.failed} failed, {self.progress.skipped} already present"
        )
        return True

    def get_maps_since(
        self, since: datetime, difficulties: Optional[list[str]]
    ) -> Optional[list[MapItem]]:
        """List every catalog map after ``since``, newest first.

        Returns:
            All listed maps, or None if any page failed.
        """
        maps: list[MapItem] = []
        page_count = 1
        page_index = 1

        while page_index <= page_count:
            if page_index == 1:
                logger.debug("Requesting first page")
            else:
                logger.debug(f"Requesting page {page_index}/{page_count}")

            try:
                page = self.catalog.get_map_page(
                    self.config.page_size,
                    page_index,
                    since,
                    difficulties,
                    timeout=self.config.page_timeout,
                )
            except CatalogApiError as e:
                logger.error(f"Failed to get page {page_index} from {self.name}: {e}. Aborting.")
                return None

            logger.debug(f"  Page {page_index}/{page.page_count} retrieved with {len(page.data)} elements")
            maps.extend(page.data)
            page_count = page.page_count
            page_index += 1

        return maps

    def _dedupe(self, items: list[MapItem]) -> list[MapItem]:
        """Keep one listing per hash and per target file name.

        Listings are newest first, so the first item for a hash or a file
        name wins. Runs on the full listing, before known maps are dropped,
        so an older version sharing a newer map's file name is never fetched.
        """
        seen_hashes: set[str] = set()
        seen_names: set[str] = set()
        unique = []
        for item in items:
            if item.hash in seen_hashes:
                logger.debug(f"Skipping older listing of {item.hash} ({item.filename})")
                continue
            file_name = self._file_name_for(item)
            if file_name in seen_names:
                logger.debug(f"Skipping older version of {file_name} ({item.hash})")
                continue
            seen_hashes.add(item.hash)
            seen_names.add(file_name)
            unique.append(item)
        return unique

    def _file_name_for(self, item: MapItem) -> str:
        if item.filename:
            return Path(item.filename.strip()).name
        return f"{item.id}{MAP_EXTENSION}"

    def _fetch_to_temp(self, item: MapItem) -> Path:
        """Download one map into the temp directory. Runs on a worker thread.

        Raises:
            HttpError: If the download fails.
            OSError: If the file can't be written.
        """
        url = self.catalog.get_download_url(item)
        data = self.http.get_bytes(url, timeout=self.config.map_timeout)

        dest_path = self.download_dir / self._file_name_for(item)
        if not write_bytes(data, dest_path):
            raise OSError(f"Could not write {dest_path}")
        return dest_path

    def _finish_download(self, item: MapItem, future: Future) -> bool:
        """Wait for one download and add the map to the collection."""
        try:
            temp_path = future.result()
        except Exception as e:
            logger.error(f"Failed to download map {item.id} ({item.title}): {e}")
            self.progress.failed += 1
            self._report()
            return False

        published_at = item.get_published_at()
        final_path = self.library.move_into_library(temp_path)
        if final_path is None or self.library.add_local_map(final_path, item) is None:
            self.progress.failed += 1
            self._report()
            return False

        # Registering may rewrite the archive, so stamp the time afterwards
        if published_at is not None:
            set_file_times(final_path, published_at)

        self.progress.completed += 1
        self._report()
        return True

    def _report(self) -> None:
        if self.progress_callback:
            self.progress_callback(self.progress)
