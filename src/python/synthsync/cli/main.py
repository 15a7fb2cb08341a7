"""synthsync command-line interface.

This module provides CLI commands for keeping a local Synth Riders custom map
collection in sync with the online catalogs and the map torrent.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click

from synthsync.api.catalogs import SynplicityCatalogApi, ZCatalogApi
from synthsync.api.client import parse_published_at
from synthsync.api.http import HttpClient
from synthsync.config import ConfigError, SyncConfig
from synthsync.downloader import SyncOrchestrator
from synthsync.library import LocalLibrary
from synthsync.store import LocalStore, MetadataCache

# Exit codes
EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def print_error(message: str) -> None:
    """Print error message to stderr.

    Args:
        message: Error message to print.
    """
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)


def print_success(message: str) -> None:
    """Print success message.

    Args:
        message: Success message to print.
    """
    click.echo(click.style(message, fg="green"))


def load_config(config_path: Optional[Path], **overrides) -> SyncConfig:
    """Build the config from a YAML file or the environment.

    Args:
        config_path: YAML config file, if given.
        **overrides: Values from command-line options; None means not set.

    Returns:
        Configured SyncConfig instance.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    if config_path:
        return SyncConfig.from_config_file(config_path, **values)
    return SyncConfig.from_environment(**values)


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to YAML config file",
)
content_dir_option = click.option(
    "--content-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Game custom content directory (holds CustomSongs)",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="synthsync")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show debug logging")
def cli(verbose: bool) -> None:
    """synthsync - Keep a Synth Riders custom map collection up to date.

    Downloads new maps from synthriderz.com, falling back to Synplicity and
    then to the map torrent.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@cli.command()
@click.option(
    "--since",
    type=str,
    default=None,
    help="Only maps published after this ISO time (default: last successful sync)",
)
@click.option(
    "--all",
    "all_maps",
    is_flag=True,
    default=False,
    help="Consider every published map",
)
@click.option(
    "--difficulty",
    "-d",
    "difficulties",
    multiple=True,
    help="Only maps with this difficulty (repeatable, e.g. -d Expert -d Master)",
)
@click.option("--no-primary", is_flag=True, default=False, help="Skip synthriderz.com")
@click.option("--no-secondary", is_flag=True, default=False, help="Skip Synplicity")
@click.option("--no-swarm", is_flag=True, default=False, help="Skip the map torrent")
@config_option
@content_dir_option
def sync(
    since: Optional[str],
    all_maps: bool,
    difficulties: tuple[str, ...],
    no_primary: bool,
    no_secondary: bool,
    no_swarm: bool,
    config_path: Optional[Path],
    content_dir: Optional[Path],
) -> None:
    """Download new maps from the first map source that works.

    Sources are tried in order: synthriderz.com, Synplicity, then the map
    torrent. On success the start time of this run is remembered, so the
    next sync only looks for newer maps.

    Examples:

        # Everything new since the last sync
        synthsync sync

        # All Expert and Master maps, catalogs only
        synthsync sync --all -d Expert -d Master --no-swarm

        # Use a config file
        synthsync sync --config ~/.config/synthsync.yaml
    """
    try:
        if since and all_maps:
            print_error("--since and --all can't be used together")
            sys.exit(EXIT_USER_ERROR)

        since_time = None
        if since:
            since_time = parse_published_at(since)
            if since_time is None:
                print_error(f"Invalid --since time '{since}'")
                sys.exit(EXIT_USER_ERROR)

        config = load_config(
            config_path,
            content_root=content_dir,
            use_primary=False if no_primary else None,
            use_secondary=False if no_secondary else None,
            use_swarm=False if no_swarm else None,
        )

        run_started = datetime.now(timezone.utc)
        orchestrator = SyncOrchestrator.from_config(config)
        store = orchestrator.library.store
        try:
            orchestrator.library.initialize()
            if all_maps:
                since_time = datetime.fromtimestamp(0, tz=timezone.utc)
            elif since_time is None:
                since_time = store.get_last_fetch_time()

            click.echo(f"Content directory: {config.content_root}")
            click.echo(f"Maps since: {since_time.isoformat()}")
            if difficulties:
                click.echo(f"Difficulties: {', '.join(difficulties)}")
            click.echo()

            success = orchestrator.try_sync(since_time, list(difficulties) or None)
        finally:
            orchestrator.close()

        if not success:
            print_error("All map sources failed")
            sys.exit(EXIT_USER_ERROR)

        store.set_last_fetch_time(run_started)
        store.save()
        print_success("Sync complete!")
        click.echo(f"  Local maps: {len(store)}")

    except (ConfigError, FileNotFoundError) as e:
        print_error(str(e))
        sys.exit(EXIT_USER_ERROR)
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        sys.exit(EXIT_SYSTEM_ERROR)


@cli.command()
@config_option
@content_dir_option
def refresh(config_path: Optional[Path], content_dir: Optional[Path]) -> None:
    """Rebuild the local map database from the content directory."""
    try:
        config = load_config(config_path, content_root=content_dir)
        library = LocalLibrary(config, LocalStore(config.local_store_file))
        library.initialize()

        print_success("Refresh complete!")
        click.echo(f"  Local maps: {len(library.store)}")

    except (ConfigError, FileNotFoundError) as e:
        print_error(str(e))
        sys.exit(EXIT_USER_ERROR)
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        sys.exit(EXIT_SYSTEM_ERROR)


@cli.command()
@click.argument("filename")
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Timeout in seconds for each catalog lookup",
)
@config_option
def metadata(filename: str, timeout: Optional[float], config_path: Optional[Path]) -> None:
    """Look up metadata for a map file and print it as JSON.

    FILENAME is the map's file name, e.g. "1234-Song-Mapper.synth". The
    local metadata cache is used when it already has a complete answer.
    """
    try:
        config = load_config(config_path)
        http = HttpClient(max_retries=config.max_retries, retry_delay=config.retry_delay)
        cache = MetadataCache(
            config.metadata_cache_file,
            primary=ZCatalogApi(http, config.primary_base_url),
            secondary=SynplicityCatalogApi(http, config.secondary_base_url),
            use_primary=config.metadata_use_primary,
            use_secondary=config.metadata_use_secondary,
        )
        try:
            cache.load()
            result = cache.get_metadata_with_fallbacks(
                filename, timeout=timeout if timeout is not None else config.metadata_timeout
            )
            cache.persist()
        finally:
            http.close()

        if result is None:
            print_error(f"No metadata found for {filename}")
            sys.exit(EXIT_USER_ERROR)

        click.echo(json.dumps(result.to_dict(), indent=2))

    except (ConfigError, FileNotFoundError) as e:
        print_error(str(e))
        sys.exit(EXIT_USER_ERROR)
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        sys.exit(EXIT_SYSTEM_ERROR)


@cli.command()
@config_option
def stats(config_path: Optional[Path]) -> None:
    """Show the number of known local maps and the last sync time."""
    try:
        config = load_config(config_path)
        store = LocalStore(config.local_store_file)
        store.load()

        click.echo(f"Local maps: {len(store)}")
        if store.last_fetch_timestamp_sec > 0:
            click.echo(f"Last sync: {store.get_last_fetch_time().isoformat()}")
        else:
            click.echo("Last sync: never")

    except (ConfigError, FileNotFoundError) as e:
        print_error(str(e))
        sys.exit(EXIT_USER_ERROR)
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        sys.exit(EXIT_SYSTEM_ERROR)


if __name__ == "__main__":
    cli()
