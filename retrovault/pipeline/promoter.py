"""
Promotion phase: places archived ROMs into the sync directory a frontend
reads, keeps its playlists current and copies box art when available.

Sync layout:
    <sync>/content/roms/<platform>/<filename>
    <sync>/playlists/<db_name>.lpl
    <thumbnails>/<db_name>/Named_Boxarts/<label>.png
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from PIL import Image

from retrovault.config.settings import PipelineSettings
from .hashing import calculate_hash
from .playlist import PlaylistError, PlaylistStore
from .storage import atomic_copy
from .types import PhaseResult, PlaylistEntry, ROMFile, utc_timestamp

logger = logging.getLogger(__name__)

ARTWORK_EXTENSIONS = ('.png', '.jpg', '.jpeg')

# RetroArch replaces these characters in thumbnail filenames
THUMBNAIL_UNSAFE_CHARS = re.compile(r'[&*/:`<>?\\|]')


class Promoter:
    """Promotes archived ROMs into the runtime library."""

    def __init__(self, settings: PipelineSettings, playlists: Optional[PlaylistStore] = None):
        """
        Initialize promoter.

        Args:
            settings: Pipeline settings
            playlists: Playlist store (created from settings when None)
        """
        self.settings = settings
        self.playlists = playlists or PlaylistStore(settings.playlists_dir)

    def promote_rom(self, rom: ROMFile) -> PhaseResult[str]:
        """
        Place a ROM at <sync>/content/roms/<platform>/<filename>.

        Hard-links when allowed and both paths share a device, copies
        otherwise. An existing destination is replaced.

        Returns:
            PhaseResult with the promoted path; metadata 'method' is
            'link' or 'copy'
        """
        if rom is None or not rom.platform or not rom.filename:
            return PhaseResult.fail("Invalid input: ROM platform and filename are required")

        source = Path(rom.path)
        destination = self.settings.sync_roms_dir / rom.platform / rom.filename

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            method = 'copy'
            if self.settings.link_promoted and _same_device(source, destination.parent):
                method = self._link(source, destination)
            if method == 'copy':
                atomic_copy(source, destination)
        except OSError as e:
            logger.error(f"Failed to promote {rom.filename}: {e}")
            return PhaseResult.fail(f"Storage error: failed to promote {rom.filename}: {e}")

        logger.debug(f"Promoted {rom.filename} -> {destination} ({method})")
        return PhaseResult.ok(str(destination), method=method, promotedAt=utc_timestamp())

    def update_playlist(self, rom: ROMFile) -> PhaseResult[bool]:
        """
        Upsert the promoted ROM into its platform playlist.

        Returns:
            PhaseResult whose data is True when an existing item was replaced
        """
        if rom is None or not rom.platform or not rom.filename:
            return PhaseResult.fail("Invalid input: ROM platform and filename are required")

        platform = self.settings.platforms.get(rom.platform)
        if platform is None:
            return PhaseResult.fail(f"Platform not found: {rom.platform}")

        promoted = self.settings.sync_roms_dir / rom.platform / rom.filename

        try:
            crc = calculate_hash(promoted, 'crc32')
            entry = PlaylistEntry(
                path=str(promoted),
                label=Path(rom.filename).stem,
                crc32=f"{crc}|crc",
                db_name=f"{platform.db_name}.lpl",
            )
            replaced = self.playlists.upsert(platform.db_name, entry)
        except PlaylistError as e:
            logger.error(f"Playlist for {platform.db_name} is unusable: {e}")
            return PhaseResult.fail(f"Storage error: {e}")
        except OSError as e:
            logger.error(f"Failed to update playlist for {rom.filename}: {e}")
            return PhaseResult.fail(f"Storage error: failed to update playlist: {e}")

        return PhaseResult.ok(
            replaced,
            playlistPath=str(self.playlists.playlist_path(platform.db_name)),
            crc32=entry.crc32,
        )

    def sync_thumbnails(self, rom: ROMFile) -> PhaseResult[bool]:
        """
        Copy box art for a ROM into the thumbnails tree.

        Best effort: always succeeds; data is True only when artwork was
        found, verified with Pillow and copied.
        """
        if not self.settings.enable_thumbnails:
            return PhaseResult.ok(False, reason="Thumbnail sync disabled")

        if self.settings.artwork_root is None:
            return PhaseResult.ok(False, reason="No artwork directory configured")

        platform = self.settings.platforms.get(rom.platform) if rom else None
        if platform is None:
            return PhaseResult.ok(False, reason="Unknown platform")

        label = Path(rom.filename).stem
        artwork = self._find_artwork(rom.platform, label)
        if artwork is None:
            return PhaseResult.ok(False, reason="No artwork found")

        destination = (
            self.settings.thumbnails_root / platform.db_name / 'Named_Boxarts'
            / f"{THUMBNAIL_UNSAFE_CHARS.sub('_', label)}.png"
        )

        try:
            with Image.open(artwork) as img:
                img.verify()
            # verify() leaves the image unusable; reopen to convert
            with Image.open(artwork) as img:
                destination.parent.mkdir(parents=True, exist_ok=True)
                if img.format == 'PNG':
                    atomic_copy(artwork, destination)
                else:
                    img.convert('RGBA').save(destination, 'PNG')
        except Exception as e:
            logger.warning(f"Skipping artwork for {rom.filename}: {e}")
            return PhaseResult.ok(False, reason=f"Invalid artwork: {e}")

        return PhaseResult.ok(True, thumbnailPath=str(destination))

    def _find_artwork(self, platform_id: str, label: str) -> Optional[Path]:
        directory = self.settings.artwork_root / platform_id
        for ext in ARTWORK_EXTENSIONS:
            candidate = directory / f"{label}{ext}"
            if candidate.is_file():
                return candidate
        return None

    @staticmethod
    def _link(source: Path, destination: Path) -> str:
        """Hard-link source to destination, replacing it; 'copy' if linking is refused."""
        temp_link = destination.with_name(f".{destination.name}.link")
        try:
            if temp_link.exists():
                temp_link.unlink()
            os.link(source, temp_link)
            os.replace(temp_link, destination)
        except OSError as e:
            logger.debug(f"Hard link refused for {destination.name}: {e}")
            return 'copy'
        finally:
            # rename() is a no-op when both names already share an inode
            if temp_link.exists():
                temp_link.unlink()
        return 'link'


def _same_device(source: Path, directory: Path) -> bool:
    try:
        return source.stat().st_dev == directory.stat().st_dev
    except OSError:
        return False
