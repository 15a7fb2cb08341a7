"""Swarm (torrent) access: client abstraction, libtorrent backend, locator lookup."""

from synthsync.swarm.client import (
    DescriptorFile,
    SessionFile,
    SessionState,
    SwarmClient,
    SwarmDescriptor,
    SwarmError,
    SwarmSession,
)
from synthsync.swarm.libtorrent_client import LibtorrentClient
from synthsync.swarm.locator import LocatorRepo, extract_locator, is_valid_locator

__all__ = [
    "DescriptorFile",
    "LibtorrentClient",
    "LocatorRepo",
    "SessionFile",
    "SessionState",
    "SwarmClient",
    "SwarmDescriptor",
    "SwarmError",
    "SwarmSession",
    "extract_locator",
    "is_valid_locator",
]
