"""
File storage helpers shared by the archive, manifest and playlist writers.

Provides keyed exclusive locks and atomic write/copy primitives: data is
written to a temporary file in the destination directory and renamed into
place, so readers never observe a partially written file.
"""

import json
import logging
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One exclusive lock per key (e.g. per platform).

    Locks are reentrant, so a holder may call methods that take the same key.

    Example:
        locks = KeyedLocks()
        with locks.hold('nes'):
            append_to_manifest(...)
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        """Get (creating if needed) the lock for a key."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the key's lock for the duration of the block, released on every exit path."""
        lock = self.get(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()


def _temp_path_for(path: Path) -> Path:
    """Hidden temp file next to the destination (same filesystem for os.replace)."""
    return path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write JSON to path atomically.

    Args:
        path: Destination file
        data: JSON-serializable data

    Raises:
        OSError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = _temp_path_for(path)

    try:
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        # Atomic rename
        os.replace(temp_file, path)
    except BaseException:
        if temp_file.exists():
            temp_file.unlink()
        raise


def atomic_copy(source: Path, destination: Path, exclusive: bool = False) -> None:
    """
    Copy source to destination atomically (copy-then-rename).

    Args:
        source: File to copy
        destination: Final path; replaced if it exists unless exclusive
        exclusive: Hard-link the finished copy into place, failing if the
            destination exists instead of replacing it

    Raises:
        FileExistsError: If exclusive and the destination exists
        OSError: If the copy fails
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_file = _temp_path_for(destination)

    try:
        shutil.copy2(source, temp_file)
        if exclusive:
            os.link(temp_file, destination)
        else:
            os.replace(temp_file, destination)
    finally:
        if temp_file.exists():
            temp_file.unlink()


def read_json(path: Path, default: Any) -> Any:
    """
    Read a JSON file, returning default when it does not exist.

    Raises:
        OSError: If the file exists but cannot be read
        json.JSONDecodeError: If the file is not valid JSON
    """
    if not path.exists():
        return default
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)
