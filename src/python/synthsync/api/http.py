"""HTTP transport shared by the catalog clients and the locator lookup.

One ``HttpClient`` is built per orchestrator from the ``SyncConfig`` and
handed to every component that talks to the network.
"""

import logging
import threading
import time
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "synthsync/0.1"

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0  # seconds
BACKOFF_MULTIPLIER = 2.0

# Transient HTTP status codes that should trigger retry
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class HttpError(Exception):
    """Raised when an HTTP request fails.

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


class HttpClient:
    """Thin wrapper around per-thread ``requests.Session`` objects with retry and backoff.

    Every call takes an explicit timeout; the caller decides how long a
    request may block (catalog pages fail fast, map downloads get longer).
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """Initialize the client.

        Args:
            session: Session shared by every thread; by default each thread
                gets its own session, since sessions aren't thread-safe.
            max_retries: Maximum attempts per request for transient failures.
            retry_delay: Initial delay in seconds between attempts.
            user_agent: User-Agent header sent with each request.
        """
        self._shared_session = session
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.headers = {"User-Agent": user_agent}

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread."""
        if self._shared_session is not None:
            return self._shared_session

        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        """Close the shared session or every per-thread session."""
        if self._shared_session is not None:
            self._shared_session.close()

        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._local = threading.local()

    def get(
        self, url: str, timeout: float, params: Optional[dict[str, str]] = None
    ) -> requests.Response:
        """Send a GET request, retrying transient failures.

        Args:
            url: The URL to request.
            timeout: Per-attempt timeout in seconds.
            params: Query parameters.

        Returns:
            The successful (2xx) response.

        Raises:
            HttpError: On a non-retryable status or when all attempts fail.
        """
        last_exception: Optional[Exception] = None
        delay = self.retry_delay

        for attempt in range(self.max_retries):
            try:
                response = self.session.get(
                    url, params=params, headers=self.headers, timeout=timeout
                )

                if response.status_code in TRANSIENT_STATUS_CODES:
                    if response.status_code == 429:
                        retry_after = response.headers.get("Retry-After")
                        if retry_after and retry_after.isdigit():
                            delay = float(retry_after)
                    raise requests.exceptions.RequestException(
                        f"Transient error: HTTP {response.status_code}"
                    )

                if not 200 <= response.status_code < 300:
                    raise HttpError(
                        f"Request failed: HTTP {response.status_code}",
                        status_code=response.status_code,
                        url=url,
                    )

                return response

            except requests.exceptions.RequestException as e:
                last_exception = e
                logger.debug(f"Attempt {attempt + 1}/{self.max_retries} for {url} failed: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                    delay *= BACKOFF_MULTIPLIER

        raise HttpError(
            f"Request failed after {self.max_retries} attempts: {last_exception}",
            url=url,
        ) from last_exception

    def get_json(
        self, url: str, timeout: float, params: Optional[dict[str, str]] = None
    ) -> Any:
        """GET a URL and parse the body as JSON.

        Raises:
            HttpError: If the request fails or the body is not JSON.
        """
        response = self.get(url, timeout=timeout, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise HttpError(f"Invalid JSON response from {url}", url=url) from e

    def get_text(
        self, url: str, timeout: float, params: Optional[dict[str, str]] = None
    ) -> str:
        """GET a URL and return the body as text.

        Raises:
            HttpError: If the request fails or the body is empty.
        """
        response = self.get(url, timeout=timeout, params=params)
        if not response.text:
            raise HttpError(f"Empty response from {url}", url=url)
        return response.text

    def get_bytes(self, url: str, timeout: float) -> bytes:
        """GET a URL and return the raw body.

        Raises:
            HttpError: If the request fails or the body is empty.
        """
        response = self.get(url, timeout=timeout)
        if not response.content:
            raise HttpError(f"Empty response from {url}", url=url)
        return response.content
