"""
RetroArch playlist (.lpl) storage.

Playlists are JSON documents of the form:

    {
      "version": "1.5",
      "default_core_path": "",
      "default_core_name": "",
      "label_display_mode": 0,
      "right_thumbnail_mode": 0,
      "left_thumbnail_mode": 0,
      "sort_mode": 0,
      "items": [{"path": ..., "label": ..., "core_path": "DETECT", ...}]
    }

Items are keyed by path: upserting an existing path replaces its item in
place, so re-promoting a ROM never duplicates it.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import StorageError
from .storage import KeyedLocks, atomic_write_json, read_json
from .types import PlaylistEntry

logger = logging.getLogger(__name__)

PLAYLIST_VERSION = "1.5"


class PlaylistError(StorageError):
    """Playlist file is unreadable or malformed."""
    pass


def empty_playlist() -> Dict[str, Any]:
    """Header fields of a new playlist, with no items."""
    return {
        'version': PLAYLIST_VERSION,
        'default_core_path': '',
        'default_core_name': '',
        'label_display_mode': 0,
        'right_thumbnail_mode': 0,
        'left_thumbnail_mode': 0,
        'sort_mode': 0,
        'items': [],
    }


class PlaylistStore:
    """Reads and upserts playlists under <sync>/playlists/."""

    def __init__(self, playlists_dir: Path, locks: Optional[KeyedLocks] = None):
        self.playlists_dir = Path(playlists_dir)
        self._locks = locks or KeyedLocks()

    def playlist_path(self, db_name: str) -> Path:
        return self.playlists_dir / f"{db_name}.lpl"

    def upsert(self, db_name: str, entry: PlaylistEntry) -> bool:
        """
        Insert or replace the item with entry.path.

        Args:
            db_name: Playlist database name (file stem)
            entry: Playlist item

        Returns:
            True if an existing item was replaced, False if appended

        Raises:
            PlaylistError: If the existing playlist is malformed
            OSError: If the playlist cannot be written
        """
        path = self.playlist_path(db_name)

        with self._locks.hold(f"playlist:{db_name}"):
            playlist = self._read(path)
            items = playlist['items']

            replaced = False
            for index, item in enumerate(items):
                if isinstance(item, dict) and item.get('path') == entry.path:
                    items[index] = entry.to_dict()
                    replaced = True
                    break

            if not replaced:
                items.append(entry.to_dict())

            atomic_write_json(path, playlist)

        logger.debug(
            f"Playlist {db_name}: {'replaced' if replaced else 'added'} {entry.label}"
        )
        return replaced

    def entries(self, db_name: str) -> List[PlaylistEntry]:
        """Items of a playlist in file order."""
        path = self.playlist_path(db_name)
        with self._locks.hold(f"playlist:{db_name}"):
            playlist = self._read(path)
        return [PlaylistEntry.from_dict(item) for item in playlist['items']]

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            playlist = read_json(path, None)
        except json.JSONDecodeError as e:
            raise PlaylistError(f"Invalid JSON in playlist {path}: {e}")

        if playlist is None:
            return empty_playlist()

        if not isinstance(playlist, dict) or not isinstance(playlist.get('items', []), list):
            raise PlaylistError(f"Playlist {path} is not a RetroArch playlist")

        # Fill in any header fields an older or hand-edited file lacks
        merged = empty_playlist()
        merged.update(playlist)
        merged['items'] = list(playlist.get('items', []))
        return merged
