"""Lookup and caching of the swarm locator (magnet link).

The current locator is published as a small text file online. The last one
seen is cached locally; when the published locator changes, the cached
descriptor belongs to an older swarm and is deleted.
"""

import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlparse

from synthsync.api.http import HttpClient, HttpError
from synthsync.store.files import atomic_write_text, delete_file

logger = logging.getLogger(__name__)


def is_valid_locator(locator: Optional[str]) -> bool:
    """Whether ``locator`` is a magnet link naming a swarm."""
    if not locator:
        return False

    parsed = urlparse(locator.strip())
    if parsed.scheme != "magnet":
        return False

    topics = parse_qs(parsed.query).get("xt", [])
    return any(topic.startswith(("urn:btih:", "urn:btmh:")) for topic in topics)


def extract_locator(raw: Optional[str]) -> Optional[str]:
    """Pull the locator out of the text published online.

    The published file is either the bare magnet link or a JSON object with
    a ``magnet`` (or ``locator``) key and an ``updated_at`` time.

    Returns:
        The locator, or None if the text doesn't hold a valid one.
    """
    if not raw:
        return None

    text = raw.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        text = str(data.get("magnet") or data.get("locator") or "").strip()

    return text if is_valid_locator(text) else None


class LocatorRepo:
    """Decides which locator to use and keeps the descriptor cache honest.

    Example:
        >>> repo = LocatorRepo(http, config.locator_url, config.locator_cache_file,
        ...                    config.cached_descriptor_file)
        >>> locator = repo.get_locator()
    """

    def __init__(
        self,
        http: HttpClient,
        locator_url: str,
        cache_file: Path,
        descriptor_cache_file: Path,
        fallback_locator: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        """Initialize the repo.

        Args:
            http: Transport for the online lookup.
            locator_url: Where the current locator is published.
            cache_file: Local copy of the last published locator text.
            descriptor_cache_file: Cached descriptor, deleted when the locator changes.
            fallback_locator: Locator to use when neither source has one.
            timeout: Timeout in seconds for the online lookup.
        """
        self.http = http
        self.locator_url = locator_url
        self.cache_file = Path(cache_file)
        self.descriptor_cache_file = Path(descriptor_cache_file)
        self.fallback_locator = fallback_locator
        self.timeout = timeout

    def fetch_remote(self) -> Optional[str]:
        """Raw locator text from the online source, or None on failure."""
        try:
            return self.http.get_text(self.locator_url, timeout=self.timeout)
        except HttpError as e:
            logger.error(f"Failed to get contents from url '{self.locator_url}': {e}")
            return None

    def read_cached(self) -> Optional[str]:
        """Raw locator text cached by an earlier run, or None."""
        if not self.cache_file.exists():
            return None
        try:
            return self.cache_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read cached locator: {e}")
            return None

    def get_locator(self) -> Optional[str]:
        """The locator to use: latest online, else cached, else the fallback.

        A remote locator that differs from the cached one invalidates the
        cached descriptor and replaces the cached locator.
        """
        raw_remote = self.fetch_remote()
        remote = extract_locator(raw_remote)
        raw_local = self.read_cached()
        local = extract_locator(raw_local)

        if remote and local:
            if raw_remote == raw_local:
                logger.debug("Using current locator (up to date)")
                return local

            logger.debug("Updating locator!")
            self._replace_cached(raw_remote)
            return remote

        if remote:
            logger.debug("Caching locator")
            self._replace_cached(raw_remote)
            return remote

        if local:
            logger.error("Couldn't get latest locator from online source; using local cached locator")
            return local

        if is_valid_locator(self.fallback_locator):
            logger.error("No locator online or cached; using the configured fallback")
            return self.fallback_locator.strip()

        logger.error("No local locator and couldn't retrieve from online source")
        return None

    def _replace_cached(self, raw_locator: str) -> None:
        # The online locator is assumed newer, so the descriptor is stale
        delete_file(self.descriptor_cache_file)
        if not atomic_write_text(raw_locator, self.cache_file):
            logger.error("Failed to cache locator")
