"""File system helpers used by the stores and downloaders.

Every helper logs and reports failure through its return value instead of
raising, so one bad file never aborts a whole sync run.
"""

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def write_bytes(data: bytes, file_path: Path) -> bool:
    """Write bytes to a file, creating parent directories.

    Returns:
        True if the file was written.
    """
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(data)
        return True
    except OSError as e:
        logger.error(f"Failed to write to {file_path}: {e}")
        return False


def atomic_write_text(contents: str, file_path: Path) -> bool:
    """Replace ``file_path`` with ``contents`` without ever exposing a partial file.

    The data goes to a temporary file in the same directory first and is then
    renamed over the target. If the temp write fails the target is untouched;
    if the rename fails the previous target content is kept.

    Returns:
        True if the target now holds ``contents``.
    """
    parent = file_path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{file_path.name}.", suffix=".tmp", dir=parent)
    except OSError as e:
        logger.error(f"Failed to create temp file for {file_path}: {e}")
        return False

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(contents)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        logger.error(f"Failed to write temp file for {file_path}: {e}")
        delete_file(tmp_path)
        return False

    try:
        os.replace(tmp_path, file_path)
    except OSError as e:
        logger.error(f"Failed to move {tmp_path} over {file_path}: {e}")
        delete_file(tmp_path)
        return False

    return True


def move_file_overwrite(src_path: Path, dest_path: Path) -> bool:
    """Move a file, replacing ``dest_path`` if it already exists."""
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src_path), str(dest_path))
        return True
    except OSError as e:
        logger.error(f"Failed to move {src_path} to {dest_path}: {e}")
        return False


def set_file_times(file_path: Path, when: datetime) -> bool:
    """Set access and modification time of a file.

    The game sorts custom maps by modification time, so this is how the
    publish order of downloaded maps is preserved.
    """
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    timestamp = when.timestamp()
    try:
        os.utime(file_path, (timestamp, timestamp))
        return True
    except OSError as e:
        logger.error(f"Failed to set file dates for {file_path.name}: {e}")
        return False


def get_modified_time(file_path: Path) -> Optional[datetime]:
    """Get the modification time of a file as an aware UTC datetime."""
    try:
        return datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
    except OSError as e:
        logger.error(f"Failed to get file dates for {file_path.name}: {e}")
        return None


def delete_file(file_path: Path) -> bool:
    """Delete a file. A file that is already gone counts as deleted."""
    try:
        file_path.unlink()
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(f"Failed to delete file at path {file_path}: {e}")
        return False


def empty_directory(dir_path: Path) -> None:
    """Remove everything inside a directory, keeping the directory itself."""
    if not dir_path.exists():
        dir_path.mkdir(parents=True, exist_ok=True)
        return

    for child in dir_path.iterdir():
        try:
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        except OSError as e:
            logger.error(f"Failed to remove {child}: {e}")


def read_json(file_path: Path) -> Optional[Any]:
    """Read and parse a JSON file.

    Returns:
        The parsed content, or None if the file is missing or unreadable.
    """
    try:
        with open(file_path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        logger.debug(f"No file at {file_path}")
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read {file_path.name}: {e}")
    return None
