"""
Append-only per-platform manifests and the dedup index built on them.

Manifest file: <manifests_dir>/<platform>.json, a JSON array of manifest
entries in archival order. Entries are never edited or removed.

The in-memory hash index is updated inside the same per-platform lock that
guards the append, so a duplicate lookup always sees every entry committed
by this process. If another process rewrites a manifest, the change in file
stamp triggers a reload on the next lookup.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from ..errors import StorageError
from .storage import KeyedLocks, atomic_write_json, read_json
from .types import ManifestEntry

logger = logging.getLogger(__name__)


class ManifestError(StorageError):
    """Manifest file is unreadable or malformed."""
    pass


class DuplicateEntryError(ManifestError):
    """Hash already present in the platform manifest."""
    pass


class ManifestStore:
    """
    Owns the manifest files of one archive.

    Example:
        store = ManifestStore(Path('/archive/manifests'))
        if not store.contains(rom_hash, 'nes'):
            store.append(entry)
    """

    def __init__(self, manifests_dir: Path, locks: Optional[KeyedLocks] = None):
        """
        Initialize manifest store.

        Args:
            manifests_dir: Directory holding <platform>.json manifests
            locks: Lock registry (one exclusive lock per platform)
        """
        self.manifests_dir = Path(manifests_dir)
        self._locks = locks or KeyedLocks()
        self._index: Dict[str, Set[str]] = {}
        self._stamps: Dict[str, Optional[Tuple[int, int]]] = {}

    @property
    def locks(self) -> KeyedLocks:
        """Per-platform locks; archive placement and discard hold them too."""
        return self._locks

    def manifest_path(self, platform: str) -> Path:
        """Path of a platform's manifest file."""
        return self.manifests_dir / f"{platform}.json"

    def contains(self, hash_value: str, platform: Optional[str] = None) -> bool:
        """
        Check whether a hash has been archived.

        Args:
            hash_value: Content hash
            platform: Platform to search; every platform when None

        Returns:
            True if the hash is in the manifest(s)

        Raises:
            ManifestError: If a manifest file is malformed
        """
        platforms = [platform] if platform else self.platforms()

        for name in platforms:
            with self._locks.hold(name):
                self._refresh_index(name)
                if hash_value in self._index[name]:
                    return True

        return False

    def append(self, entry: ManifestEntry) -> int:
        """
        Append an entry to its platform's manifest.

        This is the commit point for archival: once it returns, the hash
        counts as a duplicate for every later lookup.

        Args:
            entry: Manifest entry to append

        Returns:
            Total entries in the manifest after the append

        Raises:
            DuplicateEntryError: If the hash is already in the manifest
            ManifestError: If the manifest file is malformed
            OSError: If the manifest cannot be written
        """
        platform = entry.platform

        with self._locks.hold(platform):
            entries = self._read_entries(platform)
            hashes = {item.get('hash') for item in entries}

            if entry.hash in hashes:
                # Keep index in sync with what is on disk
                self._index[platform] = hashes
                raise DuplicateEntryError(
                    f"Duplicate hash {entry.hash} already in manifest for {platform}"
                )

            entries.append(entry.to_dict())
            path = self.manifest_path(platform)
            atomic_write_json(path, entries)

            hashes.add(entry.hash)
            self._index[platform] = hashes
            self._stamps[platform] = _file_stamp(path)

        logger.debug(f"Manifest {platform}: appended {entry.filename} ({len(entries)} entries)")
        return len(entries)

    def entries(self, platform: str) -> List[ManifestEntry]:
        """
        Read every entry of a platform manifest in archival order.

        Raises:
            ManifestError: If the manifest file is malformed
        """
        with self._locks.hold(platform):
            raw = self._read_entries(platform)

        try:
            return [ManifestEntry.from_dict(item) for item in raw]
        except (KeyError, TypeError) as e:
            raise ManifestError(f"Malformed entry in manifest for {platform}: {e}")

    def references(self, platform: str, filename: str) -> bool:
        """
        Check whether a committed entry names an archived file.

        Raises:
            ManifestError: If the manifest file is malformed
        """
        with self._locks.hold(platform):
            raw = self._read_entries(platform)
        return any(isinstance(item, dict) and item.get('filename') == filename for item in raw)

    def platforms(self) -> List[str]:
        """Platforms that have a manifest file or indexed entries."""
        names = set(self._index.keys())
        if self.manifests_dir.exists():
            names.update(p.stem for p in self.manifests_dir.glob('*.json'))
        return sorted(names)

    def _refresh_index(self, platform: str) -> None:
        """Reload a platform's hash index if its file changed. Caller holds the lock."""
        path = self.manifest_path(platform)
        stamp = _file_stamp(path)

        if platform in self._index and self._stamps.get(platform) == stamp:
            return

        entries = self._read_entries(platform)
        self._index[platform] = {item.get('hash') for item in entries}
        self._stamps[platform] = stamp

    def _read_entries(self, platform: str) -> list:
        """Read raw manifest array. Caller holds the lock."""
        path = self.manifest_path(platform)
        try:
            data = read_json(path, [])
        except json.JSONDecodeError as e:
            raise ManifestError(f"Invalid JSON in manifest {path}: {e}")

        if not isinstance(data, list):
            raise ManifestError(f"Manifest {path} must contain a JSON array")

        return data


def _file_stamp(path: Path) -> Optional[Tuple[int, int]]:
    """Modification stamp used to notice external manifest changes."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return (stat.st_mtime_ns, stat.st_size)
