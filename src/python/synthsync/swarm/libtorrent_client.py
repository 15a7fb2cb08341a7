"""libtorrent implementation of the swarm client.

libtorrent is an optional dependency (``pip install synthsync[swarm]``); it
is imported on first use so the catalog sources work without it.

Selected files are downloaded under a ``.part`` suffix and renamed to their
real name when the session stops, so a file at its complete path is always
a finished download.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Optional

from synthsync.swarm.client import (
    DescriptorFile,
    SessionFile,
    SessionState,
    SwarmDescriptor,
    SwarmError,
)

logger = logging.getLogger(__name__)

INCOMPLETE_SUFFIX = ".part"

# File priorities understood by libtorrent
DONT_DOWNLOAD = 0
DEFAULT_PRIORITY = 4

METADATA_POLL_INTERVAL = 0.5  # seconds


def _import_libtorrent():
    try:
        import libtorrent
    except ImportError as e:
        raise SwarmError(
            "libtorrent is required for swarm downloads. Install with: pip install synthsync[swarm]"
        ) from e
    return libtorrent


def _torrent_info(lt, data: bytes):
    decoded = lt.bdecode(data)
    if decoded is None:
        raise SwarmError("Descriptor is not valid bencoded data")
    try:
        return lt.torrent_info(decoded)
    except RuntimeError as e:
        raise SwarmError(f"Invalid descriptor: {e}") from e


class LibtorrentSession:
    """One torrent added to a libtorrent session."""

    def __init__(self, lt, session, handle, torrent_info, save_dir: Path) -> None:
        self._lt = lt
        self._session = session
        self._handle = handle
        self._removed = False
        self._selected: set[int] = set()

        storage = torrent_info.files()
        self._sizes = [storage.file_size(i) for i in range(storage.num_files())]
        self._files = []
        for i in range(storage.num_files()):
            path = storage.file_path(i)
            self._files.append(
                SessionFile(
                    index=i,
                    path=path,
                    complete_path=save_dir / path,
                    incomplete_path=save_dir / (path + INCOMPLETE_SUFFIX),
                )
            )

    @property
    def files(self) -> list[SessionFile]:
        return self._files

    def select(self, file: SessionFile) -> None:
        self._handle.rename_file(file.index, file.path + INCOMPLETE_SUFFIX)
        self._handle.file_priority(file.index, DEFAULT_PRIORITY)
        self._selected.add(file.index)

    def start(self) -> None:
        self._handle.resume()

    def stop(self) -> None:
        if self._removed:
            return

        self._handle.pause()
        file_progress = self._handle.file_progress()
        self._session.remove_torrent(self._handle)
        self._removed = True

        for index in sorted(self._selected):
            file = self._files[index]
            if file_progress[index] < self._sizes[index] or not file.incomplete_path.exists():
                continue
            try:
                os.replace(file.incomplete_path, file.complete_path)
            except OSError as e:
                logger.error(f"Failed to finalize {file.path}: {e}")

    def state(self) -> SessionState:
        if self._removed:
            return SessionState.STOPPED

        status = self._handle.status()
        if status.errc.value() != 0:
            return SessionState.ERROR

        states = self._lt.torrent_status.states
        if status.state in (states.checking_files, states.checking_resume_data):
            return SessionState.CHECKING
        if status.is_finished or status.is_seeding:
            return SessionState.SEEDING
        if status.flags & self._lt.torrent_flags.paused:
            return SessionState.STOPPED
        return SessionState.DOWNLOADING

    def progress(self) -> float:
        if self._removed:
            total = sum(self._sizes[i] for i in self._selected)
            done = sum(
                self._sizes[i] for i in self._selected if self._files[i].complete_path.exists()
            )
            return 100.0 * done / total if total else 100.0
        return self._handle.status().progress * 100.0

    def error(self) -> Optional[str]:
        if self._removed:
            return None
        status = self._handle.status()
        if status.errc.value() == 0:
            return None
        return status.errc.message()

    def close(self) -> None:
        if not self._removed:
            self._session.remove_torrent(self._handle)
            self._removed = True


class LibtorrentClient:
    """Swarm client backed by a single libtorrent session.

    Example:
        >>> client = LibtorrentClient()
        >>> descriptor = client.load_descriptor(client.fetch_descriptor(magnet, timeout=30))
        >>> session = client.open_session(descriptor, Path("SongDl"))
    """

    def __init__(self, listen_interfaces: str = "0.0.0.0:6881") -> None:
        self.listen_interfaces = listen_interfaces
        self._lt = None
        self._session = None

    def _get_session(self):
        if self._session is None:
            self._lt = _import_libtorrent()
            self._session = self._lt.session({"listen_interfaces": self.listen_interfaces})
        return self._lt, self._session

    def fetch_descriptor(self, locator: str, timeout: float) -> bytes:
        lt, session = self._get_session()
        try:
            params = lt.parse_magnet_uri(locator)
        except RuntimeError as e:
            raise SwarmError(f"Invalid locator: {e}") from e

        params.save_path = tempfile.gettempdir()
        params.flags |= lt.torrent_flags.upload_mode
        handle = session.add_torrent(params)

        logger.debug("Getting descriptor from locator...")
        deadline = time.monotonic() + timeout
        try:
            while not handle.status().has_metadata:
                if time.monotonic() > deadline:
                    raise SwarmError(f"Timed out after {timeout}s waiting for descriptor")
                time.sleep(METADATA_POLL_INTERVAL)

            torrent_info = handle.torrent_file()
            return lt.bencode(lt.create_torrent(torrent_info).generate())
        finally:
            session.remove_torrent(handle)

    def load_descriptor(self, data: bytes) -> SwarmDescriptor:
        lt = _import_libtorrent()
        torrent_info = _torrent_info(lt, data)
        storage = torrent_info.files()
        files = [
            DescriptorFile(index=i, path=storage.file_path(i), size=storage.file_size(i))
            for i in range(storage.num_files())
        ]
        return SwarmDescriptor(files=files, raw=data)

    def open_session(self, descriptor: SwarmDescriptor, save_dir: Path) -> LibtorrentSession:
        lt, session = self._get_session()
        torrent_info = _torrent_info(lt, descriptor.raw)

        params = lt.add_torrent_params()
        params.ti = torrent_info
        params.save_path = str(save_dir)
        params.file_priorities = [DONT_DOWNLOAD] * torrent_info.num_files()
        params.flags |= lt.torrent_flags.paused
        params.flags &= ~lt.torrent_flags.auto_managed

        try:
            handle = session.add_torrent(params)
        except RuntimeError as e:
            raise SwarmError(f"Failed to add descriptor to session: {e}") from e

        logger.debug(f"Session has {torrent_info.num_files()} files, none selected")
        return LibtorrentSession(lt, session, handle, torrent_info, Path(save_dir))
