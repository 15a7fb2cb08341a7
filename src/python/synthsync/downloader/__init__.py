"""Map sources and the fallback orchestrator."""

from synthsync.downloader.catalog import CatalogSource, DownloadProgress
from synthsync.downloader.orchestrator import SyncOrchestrator
from synthsync.downloader.swarm import SwarmDownloadResult, SwarmSource, SwarmSourceState

__all__ = [
    "CatalogSource",
    "DownloadProgress",
    "SwarmDownloadResult",
    "SwarmSource",
    "SwarmSourceState",
    "SyncOrchestrator",
]
