"""Unit tests for the local map collection."""

import json
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from synthsync.api.client import MapItem
from synthsync.config import SyncConfig
from synthsync.library import METADATA_ENTRY_NAME, LocalLibrary, parse_local_map
from synthsync.store.files import get_modified_time
from synthsync.store.local_store import LocalStore, MapRecord
from synthsync.timestamps import TimestampMappings


def create_map_file(path: Path, metadata: Optional[dict] = None) -> Path:
    """Create a minimal .synth archive, optionally with a metadata entry."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("beatmap.meta.bin", b"beatmap")
        if metadata is not None:
            zf.writestr(METADATA_ENTRY_NAME, json.dumps(metadata))
    return path


def create_library(tmpdir: str) -> LocalLibrary:
    config = SyncConfig(content_root=Path(tmpdir) / "content", persistent_dir=Path(tmpdir) / "data")
    return LocalLibrary(config, LocalStore(config.local_store_file))


class TestParseLocalMap:
    """Tests for parse_local_map."""

    def test_reads_metadata_entry(self) -> None:
        """Should build a record from the archive's metadata entry."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = create_map_file(
                Path(tmpdir) / "song.synth",
                {"id": 12, "hash": "abc", "title": "Song", "published_at": "2024-01-02T03:04:05Z"},
            )

            record = parse_local_map(path)

            assert record.hash == "abc"
            assert record.id == 12
            assert record.title == "Song"
            assert record.file_path == str(path)
            assert record.published_at_sec == int(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc).timestamp())

    def test_writes_missing_metadata_from_item(self) -> None:
        """Should add the metadata entry when a catalog item is known."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = create_map_file(Path(tmpdir) / "song.synth")
            item = MapItem(id=5, hash="def", title="Song", filename="song.synth")

            record = parse_local_map(path, item)

            assert record.hash == "def"
            with zipfile.ZipFile(path) as zf:
                assert json.loads(zf.read(METADATA_ENTRY_NAME)) == {"id": 5, "hash": "def"}

            assert parse_local_map(path).hash == "def"

    def test_missing_metadata_without_item(self) -> None:
        """Should reject a map with no metadata and nothing to rebuild it from."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = create_map_file(Path(tmpdir) / "song.synth")

            assert parse_local_map(path) is None

    def test_not_a_zip(self) -> None:
        """Should reject a file that is not an archive."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "broken.synth"
            path.write_bytes(b"not a zip")

            assert parse_local_map(path) is None


class TestLocalLibraryInitialize:
    """Tests for reconciling the registry with the content directory."""

    def test_adds_unknown_files_and_removes_missing(self) -> None:
        """Should add new files and drop records whose file is gone."""
        with tempfile.TemporaryDirectory() as tmpdir:
            library = create_library(tmpdir)
            create_map_file(library.maps_dir / "a.synth", {"hash": "ha"})
            create_map_file(library.maps_dir / "b.synth", {"hash": "hb"})
            library.store.add_map(MapRecord(hash="gone", file_path=str(library.maps_dir / "gone.synth")))

            library.initialize()

            assert len(library.store) == 2
            assert library.store.get_from_hash("gone") is None
            assert library.store.get_from_path(str(library.maps_dir / "a.synth")).hash == "ha"

            reloaded = LocalStore(library.config.local_store_file)
            reloaded.load()
            assert len(reloaded) == 2

    def test_skips_unparsable_files(self) -> None:
        """Should leave unparsable files out of the registry."""
        with tempfile.TemporaryDirectory() as tmpdir:
            library = create_library(tmpdir)
            create_map_file(library.maps_dir / "ok.synth", {"hash": "ok"})
            (library.maps_dir / "bad.synth").write_bytes(b"garbage")

            library.initialize()

            assert len(library.store) == 1

    def test_creates_missing_maps_dir(self) -> None:
        """Should create the custom maps directory when it's missing."""
        with tempfile.TemporaryDirectory() as tmpdir:
            library = create_library(tmpdir)

            library.initialize()

            assert library.maps_dir.is_dir()
            assert library.config.local_store_file.exists()


class TestLocalLibraryOperations:
    """Tests for filtering, adding and moving maps."""

    def test_filter_out_existing_maps(self) -> None:
        """Should drop items already registered or without a hash."""
        with tempfile.TemporaryDirectory() as tmpdir:
            library = create_library(tmpdir)
            library.store.add_map(MapRecord(hash="have", file_path="x.synth"))

            items = [MapItem(hash="have"), MapItem(hash="new"), MapItem(hash=None)]

            assert [item.hash for item in library.filter_out_existing_maps(items)] == ["new"]

    def test_move_into_library_sets_time(self) -> None:
        """Should move the file into CustomSongs and stamp its publish time."""
        with tempfile.TemporaryDirectory() as tmpdir:
            library = create_library(tmpdir)
            src = create_map_file(Path(tmpdir) / "dl" / "song.synth", {"hash": "abc"})
            when = datetime(2022, 6, 1, tzinfo=timezone.utc)

            dest = library.move_into_library(src, when)

            assert dest == library.maps_dir / "song.synth"
            assert dest.exists()
            assert get_modified_time(dest) == when

    def test_apply_local_mappings(self) -> None:
        """Should stamp registered files with their mapped publish time."""
        with tempfile.TemporaryDirectory() as tmpdir:
            library = create_library(tmpdir)
            path = create_map_file(library.maps_dir / "song.synth", {"hash": "abc"})
            library.add_local_map(path)

            mappings = TimestampMappings()
            mappings.add(MapItem(hash="abc", filename="song.synth", published_at="2021-07-04T00:00:00Z"))
            mappings.add(MapItem(hash="unknown", filename="other.synth", published_at="2021-07-04T00:00:00Z"))

            assert library.apply_local_mappings(mappings) == 1
            assert get_modified_time(path) == datetime(2021, 7, 4, tzinfo=timezone.utc)
