"""Swarm (torrent) client abstraction.

The sync engine only needs a handful of operations from a torrent engine:
turn a locator into a descriptor, list the descriptor's files, download a
chosen subset and report progress. ``SwarmClient`` and ``SwarmSession``
describe that surface so the engine can be driven by fakes in tests.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol


class SwarmError(Exception):
    """Raised when the swarm engine can't complete an operation."""


class SessionState(Enum):
    """State of a download session, as reported by the engine."""

    CHECKING = "checking"
    DOWNLOADING = "downloading"
    SEEDING = "seeding"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class DescriptorFile:
    """One file listed in a swarm descriptor.

    Attributes:
        index: Position of the file in the descriptor.
        path: Path of the file relative to the download directory.
        size: File size in bytes.
    """

    index: int
    path: str
    size: int = 0

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name.strip()


@dataclass
class SwarmDescriptor:
    """The swarm's file manifest plus the raw bytes it was loaded from."""

    files: list[DescriptorFile] = field(default_factory=list)
    raw: bytes = b""


@dataclass
class SessionFile:
    """A descriptor file as laid out on disk by a session.

    Attributes:
        index: Position of the file in the descriptor.
        path: Path relative to the download directory.
        complete_path: Where the file is once fully downloaded.
        incomplete_path: Where partial data lives while downloading.
    """

    index: int
    path: str
    complete_path: Path
    incomplete_path: Path

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name.strip()


class SwarmSession(Protocol):
    """A descriptor added to the engine, with every file initially deselected."""

    @property
    def files(self) -> list[SessionFile]:
        ...

    def select(self, file: SessionFile) -> None:
        """Mark a file for download."""
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        """Stop transferring and leave completed files at their complete path."""
        ...

    def state(self) -> SessionState:
        ...

    def progress(self) -> float:
        """Percentage (0-100) of the selected data received."""
        ...

    def error(self) -> Optional[str]:
        ...

    def close(self) -> None:
        """Remove the session from the engine, keeping downloaded data."""
        ...


class SwarmClient(Protocol):
    """Torrent engine used by the swarm map source."""

    def fetch_descriptor(self, locator: str, timeout: float) -> bytes:
        """Resolve a locator (magnet link) into raw descriptor bytes.

        Raises:
            SwarmError: If the descriptor couldn't be fetched in time.
        """
        ...

    def load_descriptor(self, data: bytes) -> SwarmDescriptor:
        """Parse raw descriptor bytes.

        Raises:
            SwarmError: If the bytes are not a valid descriptor.
        """
        ...

    def open_session(self, descriptor: SwarmDescriptor, save_dir: Path) -> SwarmSession:
        """Add a descriptor to the engine with nothing selected for download.

        Raises:
            SwarmError: If the engine rejects the descriptor.
        """
        ...
