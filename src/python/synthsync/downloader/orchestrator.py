"""Source fallback: primary catalog, then secondary catalog, then the swarm."""

import logging
import threading
from datetime import datetime
from typing import Optional, Union

from synthsync.api.catalogs import SynplicityCatalogApi, ZCatalogApi
from synthsync.api.http import HttpClient
from synthsync.config import SyncConfig
from synthsync.downloader.catalog import CatalogSource
from synthsync.downloader.swarm import SwarmSource
from synthsync.library import LocalLibrary
from synthsync.store.local_store import LocalStore
from synthsync.store.metadata_cache import MetadataCache
from synthsync.swarm.client import SwarmClient
from synthsync.swarm.libtorrent_client import LibtorrentClient
from synthsync.swarm.locator import LocatorRepo

logger = logging.getLogger(__name__)

MapSource = Union[CatalogSource, SwarmSource]


class SyncOrchestrator:
    """Tries each enabled source in order until one succeeds.

    Each source skips maps that are already local, so running a sync twice
    only downloads what's new.

    Example:
        >>> orchestrator = SyncOrchestrator.from_config(SyncConfig.from_environment())
        >>> orchestrator.library.initialize()
        >>> ok = orchestrator.try_sync(orchestrator.library.store.get_last_fetch_time(), None)
    """

    def __init__(
        self,
        library: LocalLibrary,
        metadata_cache: MetadataCache,
        primary: Optional[CatalogSource] = None,
        secondary: Optional[CatalogSource] = None,
        swarm: Optional[SwarmSource] = None,
        http: Optional[HttpClient] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            library: Local collection shared by every source.
            metadata_cache: Metadata cache shared by the swarm source.
            primary: Primary catalog source, None if disabled.
            secondary: Secondary catalog source, None if disabled.
            swarm: Swarm source, None if disabled.
            http: Transport to close with the orchestrator, if owned.
        """
        self.library = library
        self.metadata_cache = metadata_cache
        self.primary = primary
        self.secondary = secondary
        self.swarm = swarm
        self.http = http

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        http: Optional[HttpClient] = None,
        swarm_client: Optional[SwarmClient] = None,
    ) -> "SyncOrchestrator":
        """Build the orchestrator and every component it needs from a config.

        Args:
            config: Engine settings; decides which sources are enabled.
            http: Transport to use; built from the config by default.
            swarm_client: Torrent engine; libtorrent by default.

        Returns:
            Orchestrator with the enabled sources wired up.
        """
        config.ensure_directories()
        http = http or HttpClient(max_retries=config.max_retries, retry_delay=config.retry_delay)

        library = LocalLibrary(config, LocalStore(config.local_store_file))
        primary_api = ZCatalogApi(http, config.primary_base_url)
        secondary_api = SynplicityCatalogApi(http, config.secondary_base_url)
        metadata_cache = MetadataCache(
            config.metadata_cache_file,
            primary=primary_api,
            secondary=secondary_api,
            use_primary=config.metadata_use_primary,
            use_secondary=config.metadata_use_secondary,
        )

        primary = CatalogSource(primary_api, library, http, config) if config.use_primary else None
        secondary = CatalogSource(secondary_api, library, http, config) if config.use_secondary else None

        swarm = None
        if config.use_swarm:
            locator_repo = LocatorRepo(
                http,
                config.locator_url,
                config.locator_cache_file,
                config.cached_descriptor_file,
                fallback_locator=config.fallback_locator,
                timeout=config.locator_timeout,
            )
            swarm = SwarmSource(
                swarm_client or LibtorrentClient(),
                locator_repo,
                library,
                metadata_cache,
                config,
            )

        return cls(library, metadata_cache, primary, secondary, swarm, http=http)

    @property
    def sources(self) -> list[MapSource]:
        """Enabled sources in the order they are tried."""
        return [source for source in (self.primary, self.secondary, self.swarm) if source is not None]

    def try_sync(
        self,
        since: datetime,
        difficulties: Optional[list[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Download new maps from the first source that works.

        Args:
            since: Only maps published after this time.
            difficulties: Difficulty names to include; None for all.
            cancel_event: Set from another thread to abort a swarm download.

        Returns:
            True if any source completed, False if all failed or none is enabled.
        """
        if not self.sources:
            logger.error("No map sources enabled")
            return False

        for source in self.sources:
            logger.info(f"Trying {source.name}...")
            try:
                if isinstance(source, SwarmSource):
                    success = source.download_maps(since, difficulties, cancel_event=cancel_event)
                else:
                    success = source.download_since(since, difficulties)
            except Exception as e:
                logger.exception(f"{source.name} failed unexpectedly: {e}")
                success = False

            if success:
                logger.info(f"Sync from {source.name} complete")
                return True
            logger.error(f"Failed to sync from {source.name}")

        logger.error("All map sources failed")
        return False

    def close(self) -> None:
        if self.http is not None:
            self.http.close()
