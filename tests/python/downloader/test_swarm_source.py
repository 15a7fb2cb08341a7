"""Unit tests for the swarm map source, driven by a fake torrent engine."""

import io
import json
import tempfile
import threading
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from unittest import mock

from synthsync.config import SyncConfig
from synthsync.downloader.swarm import SwarmSource, SwarmSourceState
from synthsync.library import METADATA_ENTRY_NAME, LocalLibrary
from synthsync.store.files import get_modified_time
from synthsync.store.local_store import LocalStore
from synthsync.store.metadata_cache import CachedMetadata, MetadataCache
from synthsync.swarm.client import (
    DescriptorFile,
    SessionFile,
    SessionState,
    SwarmDescriptor,
    SwarmError,
)

SINCE = datetime(2024, 1, 1, tzinfo=timezone.utc)
NEW_TIME = "2024-03-01T00:00:00Z"
OLD_TIME = "2020-03-01T00:00:00Z"
LOCATOR = "magnet:?xt=urn:btih:c2c904b7be20bb9bdcb4d2bf3b0e8dcbfba3e428"

PARTIAL = b"PARTIAL"


def create_map_bytes(map_hash: str) -> bytes:
    """Create a .synth archive carrying a metadata entry with ``map_hash``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("beatmap.meta.bin", b"beatmap")
        zf.writestr(METADATA_ENTRY_NAME, json.dumps({"hash": map_hash}))
    return buffer.getvalue()


class FakeSession:
    """Session that replays scripted states and writes scripted payloads on start."""

    def __init__(self, descriptor: SwarmDescriptor, save_dir: Path, states: list, payloads: dict) -> None:
        self._files = [
            SessionFile(
                index=f.index,
                path=f.path,
                complete_path=save_dir / f.path,
                incomplete_path=save_dir / (f.path + ".part"),
            )
            for f in descriptor.files
        ]
        self.states = list(states)
        self.payloads = payloads
        self.selected: list[SessionFile] = []
        self.started = False
        self.stopped = False
        self.closed = False
        self._progress = 0.0

    @property
    def files(self) -> list[SessionFile]:
        return self._files

    def select(self, file: SessionFile) -> None:
        self.selected.append(file)

    def start(self) -> None:
        self.started = True
        for file in self.selected:
            payload = self.payloads.get(file.name, create_map_bytes(f"hash-{file.name}"))
            if payload is None:
                continue
            target = file.incomplete_path if payload == PARTIAL else file.complete_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)

    def stop(self) -> None:
        self.stopped = True

    def state(self) -> SessionState:
        state, self._progress = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return state

    def progress(self) -> float:
        return self._progress

    def error(self) -> Optional[str]:
        return "tracker unreachable"

    def close(self) -> None:
        self.closed = True


class FakeSwarmClient:
    """Swarm client whose descriptor is a JSON list of file names."""

    def __init__(self, file_names: list[str], states: Optional[list] = None, payloads: Optional[dict] = None) -> None:
        self.descriptor_bytes = json.dumps(file_names).encode()
        self.states = states or [(SessionState.DOWNLOADING, 50.0), (SessionState.SEEDING, 100.0)]
        self.payloads = payloads or {}
        self.fetch_calls: list[str] = []
        self.sessions: list[FakeSession] = []

    def fetch_descriptor(self, locator: str, timeout: float) -> bytes:
        self.fetch_calls.append(locator)
        return self.descriptor_bytes

    def load_descriptor(self, data: bytes) -> SwarmDescriptor:
        try:
            names = json.loads(data)
        except ValueError as e:
            raise SwarmError(f"bad descriptor: {e}") from e
        files = [DescriptorFile(index=i, path=f"CustomSongs/{name}", size=10) for i, name in enumerate(names)]
        return SwarmDescriptor(files=files, raw=data)

    def open_session(self, descriptor: SwarmDescriptor, save_dir: Path) -> FakeSession:
        session = FakeSession(descriptor, save_dir, self.states, self.payloads)
        self.sessions.append(session)
        return session


def write_mappings(config: SyncConfig, entries: dict) -> None:
    """Write a timestamp mapping file: file name -> published_at."""
    config.persistent_dir.mkdir(parents=True, exist_ok=True)
    config.timestamp_mapping_file.write_text(
        json.dumps(
            [
                {"hash": f"hash-{name}", "filename": name, "published_at": published_at}
                for name, published_at in entries.items()
            ]
        )
    )


def create_source(tmpdir: str, client: FakeSwarmClient, locator: Optional[str] = LOCATOR, **overrides) -> SwarmSource:
    config = SyncConfig(
        content_root=Path(tmpdir) / "content",
        persistent_dir=Path(tmpdir) / "data",
        temp_dir=Path(tmpdir) / "tmp",
        swarm_poll_interval=0,
        **overrides,
    )
    library = LocalLibrary(config, LocalStore(config.local_store_file))
    cache = MetadataCache(config.metadata_cache_file, use_primary=False)
    locator_repo = mock.Mock()
    locator_repo.get_locator.return_value = locator
    return SwarmSource(client, locator_repo, library, cache, config)


class TestSwarmSourceInitialize:
    """Tests for descriptor resolution and metadata refresh."""

    def test_fetches_and_caches_descriptor(self) -> None:
        """Should fetch the descriptor via the locator and cache its bytes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["a.synth", "readme.txt"])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"a.synth": NEW_TIME})

            assert source.initialize()

            assert client.fetch_calls == [LOCATOR]
            assert source.config.cached_descriptor_file.read_bytes() == client.descriptor_bytes
            assert source.state == SwarmSourceState.READY
            assert list(source.maps_by_file_name) == ["a.synth"]

            metadata = source.metadata_cache.get("a.synth")
            assert metadata.published_at_sec == int(datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp())
            assert metadata.downloaded_path == str(source.library.maps_dir / "a.synth")
            assert source.config.metadata_cache_file.exists()

    def test_uses_cached_descriptor(self) -> None:
        """Should not fetch when a valid cached descriptor exists."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["a.synth"])
            source = create_source(tmpdir, client)
            source.config.cached_descriptor_file.parent.mkdir(parents=True)
            source.config.cached_descriptor_file.write_bytes(json.dumps(["cached.synth"]).encode())

            assert source.initialize()

            assert client.fetch_calls == []
            assert list(source.maps_by_file_name) == ["cached.synth"]

    def test_corrupt_cached_descriptor_is_refetched(self) -> None:
        """Should fetch a new descriptor when the cached one can't be loaded."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["a.synth"])
            source = create_source(tmpdir, client)
            source.config.cached_descriptor_file.parent.mkdir(parents=True)
            source.config.cached_descriptor_file.write_bytes(b"\x00garbage")

            assert source.initialize()

            assert client.fetch_calls == [LOCATOR]

    def test_no_locator_and_no_cache(self) -> None:
        """Should fail when there is no way to get a descriptor."""
        with tempfile.TemporaryDirectory() as tmpdir:
            source = create_source(tmpdir, FakeSwarmClient(["a.synth"]), locator=None)

            assert not source.initialize()
            assert source.state == SwarmSourceState.ERROR

    def test_keeps_complete_cached_metadata(self) -> None:
        """Should keep publish times and difficulties already in the cache."""
        with tempfile.TemporaryDirectory() as tmpdir:
            source = create_source(tmpdir, FakeSwarmClient(["a.synth"]))
            source.metadata_cache.add(
                CachedMetadata(file_name="a.synth", published_at_sec=123, difficulties=["Expert"])
            )
            source.metadata_cache._has_loaded = True

            source.initialize()

            metadata = source.maps_by_file_name["a.synth"]
            assert metadata.published_at_sec == 123
            assert metadata.difficulties == ["Expert"]


class TestSwarmSourceSelection:
    """Tests for the download filters."""

    def test_selects_only_new_maps_after_cutoff(self) -> None:
        """Should select maps published after the cutoff that aren't local yet."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth", "old.synth", "have.synth", "unknown.synth"])
            source = create_source(tmpdir, client)
            write_mappings(
                source.config,
                {"new.synth": NEW_TIME, "old.synth": OLD_TIME, "have.synth": NEW_TIME},
            )
            source.library.maps_dir.mkdir(parents=True)
            (source.library.maps_dir / "have.synth").write_bytes(create_map_bytes("hash-have"))

            assert source.download_maps(SINCE)

            session = client.sessions[0]
            assert [f.name for f in session.selected] == ["new.synth"]
            assert source.result.already_downloaded == 1

    def test_difficulty_filter(self) -> None:
        """Should select only maps with a wanted difficulty and known difficulties."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["d.synth", "e.synth", "f.synth"])
            source = create_source(tmpdir, client)
            for name, difficulties in (("d.synth", ["Expert"]), ("e.synth", ["Easy"]), ("f.synth", None)):
                source.metadata_cache.add(
                    CachedMetadata(file_name=name, published_at_sec=2_000_000_000, difficulties=difficulties)
                )
            source.metadata_cache._has_loaded = True

            assert source.download_maps(SINCE, ["Expert", "Master"])

            assert [f.name for f in client.sessions[0].selected] == ["d.synth"]

    def test_nothing_selected_is_success(self) -> None:
        """Should succeed without starting the session when everything is up to date."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["old.synth"])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"old.synth": OLD_TIME})

            assert source.download_maps(SINCE)

            session = client.sessions[0]
            assert not session.started
            assert session.stopped
            assert session.closed


class TestSwarmSourceDownload:
    """Tests for the progress state machine and post-download handling."""

    def test_seeding_completes_and_registers(self) -> None:
        """Should stop on seeding, move the map into the collection and register it."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"new.synth": NEW_TIME})

            assert source.download_maps(SINCE)

            final_path = source.library.maps_dir / "new.synth"
            assert final_path.exists()
            assert source.state == SwarmSourceState.SEEDING
            assert client.sessions[0].stopped
            record = source.library.store.get_from_hash("hash-new.synth")
            assert record.file_path == str(final_path)
            assert get_modified_time(final_path) == datetime(2024, 3, 1, tzinfo=timezone.utc)
            assert source.metadata_cache.get("new.synth").hash == "hash-new.synth"

            reloaded = LocalStore(source.config.local_store_file)
            reloaded.load()
            assert reloaded.get_from_hash("hash-new.synth") is not None

    def test_error_state_fails(self) -> None:
        """Should fail and stop the session when the engine reports an error."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"], states=[(SessionState.ERROR, 10.0)])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"new.synth": NEW_TIME})

            assert not source.download_maps(SINCE)

            assert source.state == SwarmSourceState.ERROR
            assert client.sessions[0].stopped
            assert len(source.library.store) == 0

    def test_stopped_succeeds_only_when_complete(self) -> None:
        """Should treat a stop as success only at 100% progress."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"], states=[(SessionState.STOPPED, 60.0)])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"new.synth": NEW_TIME})
            assert not source.download_maps(SINCE)

        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"], states=[(SessionState.STOPPED, 100.0)])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"new.synth": NEW_TIME})
            assert source.download_maps(SINCE)
            assert source.state == SwarmSourceState.STOPPED

    def test_cancel_stops_session(self) -> None:
        """Should abort as a failure and stop the session when cancelled."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"], states=[(SessionState.DOWNLOADING, 5.0)])
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"new.synth": NEW_TIME})
            cancel_event = threading.Event()
            cancel_event.set()

            assert not source.download_maps(SINCE, cancel_event=cancel_event)

            assert client.sessions[0].stopped
            assert client.sessions[0].closed

    def test_initialize_clears_leftovers_of_aborted_run(self) -> None:
        """Should empty the download dir of files left by a cancelled session."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(
                ["new.synth", "other.synth"],
                states=[(SessionState.DOWNLOADING, 5.0)],
                payloads={"other.synth": PARTIAL},
            )
            source = create_source(tmpdir, client)
            write_mappings(source.config, {"new.synth": NEW_TIME, "other.synth": NEW_TIME})
            cancel_event = threading.Event()
            cancel_event.set()

            assert not source.download_maps(SINCE, cancel_event=cancel_event)
            complete, partial = client.sessions[0].files
            assert complete.complete_path.exists()
            assert partial.incomplete_path.exists()

            next_run = create_source(tmpdir, client)
            assert next_run.initialize()

            download_dir = next_run.config.swarm_download_dir
            assert download_dir.is_dir()
            assert list(download_dir.iterdir()) == []
            assert next_run.config.cached_descriptor_file.exists()

    def test_timeout_stops_session(self) -> None:
        """Should abort as a failure when the download takes too long."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"], states=[(SessionState.CHECKING, 0.0)])
            source = create_source(tmpdir, client, swarm_timeout=-1)
            write_mappings(source.config, {"new.synth": NEW_TIME})

            assert not source.download_maps(SINCE)
            assert client.sessions[0].stopped

    def test_bad_and_partial_files_are_cleaned_up(self) -> None:
        """Should delete unparsable and partial files and count missing ones."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(
                ["good.synth", "bad.synth", "partial.synth", "missing.synth"],
                payloads={"bad.synth": b"not a zip", "partial.synth": PARTIAL, "missing.synth": None},
            )
            source = create_source(tmpdir, client)
            write_mappings(
                source.config,
                {name: NEW_TIME for name in ("good.synth", "bad.synth", "partial.synth", "missing.synth")},
            )

            assert source.download_maps(SINCE)

            files = {f.name: f for f in client.sessions[0].files}
            assert not files["bad.synth"].complete_path.exists()
            assert not files["partial.synth"].incomplete_path.exists()
            assert source.result.moved == 1
            assert source.result.deleted == 2
            assert source.result.skipped == 1
            assert len(source.library.store) == 1

    def test_open_session_failure(self) -> None:
        """Should fail when the engine rejects the descriptor."""
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeSwarmClient(["new.synth"])
            source = create_source(tmpdir, client)
            with mock.patch.object(client, "open_session", side_effect=SwarmError("rejected")):
                assert not source.download_maps(SINCE)
            assert source.state == SwarmSourceState.ERROR
