"""Configuration for the map synchronization engine.

A single ``SyncConfig`` instance is built at startup (from defaults, a YAML
file, or environment variables) and passed to every component, so tests can
point the whole engine at a temporary directory.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default Synth Riders custom content directory (Steam on Linux)
DEFAULT_CONTENT_ROOT = Path("~/.steam/steam/steamapps/common/SynthRiders/SynthRidersUC")

# Where the engine keeps its own state between runs
DEFAULT_PERSISTENT_DIR = Path("~/.local/share/synthsync")

# Catalog endpoints
Z_BASE_URL = "https://synthriderz.com"
SYNPLICITY_BASE_URL = "https://api.synplicity.live"

# Publicly hosted text file holding the latest magnet link for the map torrent
LOCATOR_URL = (
    "https://www.dropbox.com/scl/fi/kt38cgixmajyalxo8vxfk/magnet_songs.txt"
    "?rlkey=sk8quyuymm82sly13ev8kjqwj&st=f88d61u9&raw=1"
)

# Content file extension
MAP_EXTENSION = ".synth"

# File names inside the persistent directory
LOCAL_STORE_FILENAME = "SRQD_local.db"
METADATA_CACHE_FILENAME = "map_metadata.json"
LOCATOR_CACHE_FILENAME = "magnet_songs.txt"
TIMESTAMP_MAPPING_FILENAME = "sr_timestamp_mapping.json"

ENV_CONTENT_DIR = "SYNTHSYNC_CONTENT_DIR"
ENV_DATA_DIR = "SYNTHSYNC_DATA_DIR"


class ConfigError(Exception):
    """Raised when a configuration file cannot be used."""


@dataclass
class SyncConfig:
    """Settings shared by every part of the sync engine.

    Attributes:
        content_root: Game custom content directory (holds CustomSongs).
        persistent_dir: Directory for the local store, caches and locator.
        temp_dir: Scratch directory for in-progress catalog downloads.
        use_primary: Try the primary (Z) catalog.
        use_secondary: Try the secondary (Synplicity) catalog.
        use_swarm: Fall back to the map torrent.
        metadata_use_primary: Let the metadata cache query the primary catalog.
        metadata_use_secondary: Let the metadata cache query the secondary catalog.
    """

    content_root: Path = DEFAULT_CONTENT_ROOT
    persistent_dir: Path = DEFAULT_PERSISTENT_DIR
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "synthsync")

    use_primary: bool = True
    use_secondary: bool = True
    use_swarm: bool = True

    metadata_use_primary: bool = True
    metadata_use_secondary: bool = False

    primary_base_url: str = Z_BASE_URL
    secondary_base_url: str = SYNPLICITY_BASE_URL
    locator_url: str = LOCATOR_URL
    fallback_locator: Optional[str] = None

    # Timeouts in seconds
    page_timeout: float = 3.0
    map_timeout: float = 60.0
    metadata_timeout: float = 10.0
    locator_timeout: float = 120.0
    descriptor_timeout: float = 30.0
    swarm_timeout: float = 12 * 60 * 60

    page_size: int = 50
    parallel_download_limit: int = 10
    checkpoint_interval: int = 100
    swarm_poll_interval: float = 1.0

    max_retries: int = 2
    retry_delay: float = 1.0

    def __post_init__(self) -> None:
        self.content_root = Path(self.content_root).expanduser()
        self.persistent_dir = Path(self.persistent_dir).expanduser()
        self.temp_dir = Path(self.temp_dir).expanduser()

        for name in ("page_size", "parallel_download_limit", "checkpoint_interval"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

    @property
    def custom_songs_dir(self) -> Path:
        """Directory the game loads custom maps from."""
        return self.content_root / "CustomSongs"

    @property
    def swarm_download_dir(self) -> Path:
        return self.content_root / "SongDl"

    @property
    def swarm_cache_dir(self) -> Path:
        return self.content_root / "SongDlCache"

    @property
    def cached_descriptor_file(self) -> Path:
        return self.swarm_cache_dir / "cached.torrent"

    @property
    def local_store_file(self) -> Path:
        return self.persistent_dir / LOCAL_STORE_FILENAME

    @property
    def metadata_cache_file(self) -> Path:
        return self.persistent_dir / METADATA_CACHE_FILENAME

    @property
    def locator_cache_file(self) -> Path:
        return self.persistent_dir / LOCATOR_CACHE_FILENAME

    @property
    def timestamp_mapping_file(self) -> Path:
        return self.persistent_dir / TIMESTAMP_MAPPING_FILENAME

    def ensure_directories(self) -> None:
        """Create every directory the engine writes into."""
        for directory in (
            self.custom_songs_dir,
            self.swarm_download_dir,
            self.swarm_cache_dir,
            self.persistent_dir,
            self.temp_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_environment(cls, **kwargs) -> "SyncConfig":
        """Create a config, taking directory overrides from the environment.

        Args:
            **kwargs: Additional field values passed to the constructor.

        Returns:
            Configured SyncConfig instance.
        """
        content_dir = os.environ.get(ENV_CONTENT_DIR)
        data_dir = os.environ.get(ENV_DATA_DIR)

        if content_dir:
            kwargs.setdefault("content_root", Path(content_dir))
        if data_dir:
            kwargs.setdefault("persistent_dir", Path(data_dir))

        return cls(**kwargs)

    @classmethod
    def from_config_file(cls, config_path: Path, **kwargs) -> "SyncConfig":
        """Create a config from a YAML file.

        Keys in the file are SyncConfig field names, e.g.:
        ```yaml
        content_root: "/sdcard/SynthRidersUC"
        use_swarm: false
        parallel_download_limit: 4
        ```

        Args:
            config_path: Path to the YAML config file.
            **kwargs: Field values that take precedence over the file.

        Returns:
            Configured SyncConfig instance.

        Raises:
            ConfigError: If the file is not valid YAML or has unknown keys.
            FileNotFoundError: If the config file doesn't exist.
        """
        import yaml

        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        try:
            with open(config_path) as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}") from e

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigError("Config file must contain a YAML dictionary")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        logger.debug(f"Loaded config from {config_path}")
        values = {**config, **kwargs}
        return cls(**values)
