"""
Archival phase: atomic copy into the archive, manifest append and the
per-ROM metadata record.

Archive layout:
    <archive>/roms/<platform>/<filename>
    <archive>/manifests/<platform>.json
    <archive>/manifests/metadata/<rom id>.json
"""

import logging
from pathlib import Path
from typing import Optional, Tuple

from retrovault.config.settings import PipelineSettings
from .hashing import calculate_hash
from .manifest import DuplicateEntryError, ManifestError, ManifestStore
from .storage import atomic_copy, atomic_write_json
from .types import ManifestEntry, PhaseResult, ROMFile, utc_timestamp

logger = logging.getLogger(__name__)


class Archiver:
    """Writes validated ROMs into the content archive."""

    def __init__(self, settings: PipelineSettings, manifests: ManifestStore):
        """
        Initialize archiver.

        Args:
            settings: Pipeline settings
            manifests: Manifest store (shared with the validator's dedup check)
        """
        self.settings = settings
        self.manifests = manifests

    def archive_rom(self, rom: ROMFile) -> PhaseResult[str]:
        """
        Copy a ROM into <archive>/roms/<platform>/.

        The copy lands in a hidden temp file first and is hard-linked into
        place under the platform lock, so an existing archive file is never
        replaced. When a different file already holds the name, the archived
        name gets a ' (<hash8>)' suffix instead.

        Returns:
            PhaseResult with the archived path; metadata 'created' is False
            when identical content was already at the destination
        """
        if rom is None or not rom.platform or not rom.filename:
            return PhaseResult.fail("Invalid input: ROM platform and filename are required")

        source = Path(rom.path)

        try:
            with self.manifests.locks.hold(rom.platform):
                destination, created = self._place(source, rom)
        except OSError as e:
            logger.error(f"Failed to archive {rom.filename}: {e}")
            return PhaseResult.fail(f"Storage error: failed to archive {rom.filename}: {e}")

        return PhaseResult.ok(
            str(destination),
            archivedAt=utc_timestamp(),
            sourcePath=str(source),
            created=created,
        )

    def _place(self, source: Path, rom: ROMFile) -> Tuple[Path, bool]:
        """Claim the archive name or its hash-suffixed form. Caller holds the platform lock."""
        algorithm = self.settings.hash_algorithm
        rom_hash = rom.hash or calculate_hash(source, algorithm)
        platform_dir = self.settings.archive_roms_dir / rom.platform

        destination = platform_dir / rom.filename
        if _claim(source, destination):
            return destination, True
        if calculate_hash(destination, algorithm) == rom_hash:
            return destination, False

        destination = platform_dir / f"{rom.stem} ({rom_hash[:8]}){rom.extension}"
        logger.debug(
            f"Archive name {rom.filename} taken by different content; "
            f"using {destination.name}"
        )
        if _claim(source, destination):
            return destination, True
        if calculate_hash(destination, algorithm) == rom_hash:
            return destination, False

        raise FileExistsError(f"archive names for {rom.filename} hold different content")

    def write_manifest(self, entry: ManifestEntry) -> PhaseResult[int]:
        """
        Append an entry to the platform manifest.

        This is the commit point: afterwards the hash counts as a duplicate.

        Returns:
            PhaseResult with the manifest's entry count
        """
        try:
            count = self.manifests.append(entry)
        except DuplicateEntryError as e:
            return PhaseResult.fail(str(e))
        except ManifestError as e:
            logger.error(f"Manifest for {entry.platform} is unusable: {e}")
            return PhaseResult.fail(f"Storage error: {e}")
        except OSError as e:
            logger.error(f"Failed to write manifest for {entry.platform}: {e}")
            return PhaseResult.fail(f"Storage error: failed to write manifest for {entry.platform}: {e}")

        return PhaseResult.ok(count, manifestPath=str(self.manifests.manifest_path(entry.platform)))

    def store_metadata(self, rom: ROMFile) -> PhaseResult[str]:
        """Write <archive>/manifests/metadata/<rom id>.json."""
        if rom is None or not rom.id:
            return PhaseResult.fail("Invalid input: ROM id is required")

        path = self.settings.metadata_dir / f"{rom.id}.json"
        record = rom.to_dict()
        record['storedAt'] = utc_timestamp()

        try:
            atomic_write_json(path, record)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to store metadata for {rom.filename}: {e}")
            return PhaseResult.fail(f"Storage error: failed to store metadata for {rom.filename}: {e}")

        return PhaseResult.ok(str(path))

    def discard(self, archived_path: Optional[str]) -> bool:
        """
        Remove an archived copy whose manifest append did not commit.

        A file named by a committed manifest entry is never removed.

        Returns:
            True if a file was removed
        """
        if not archived_path:
            return False

        path = Path(archived_path)
        platform = path.parent.name

        with self.manifests.locks.hold(platform):
            try:
                if self.manifests.references(platform, path.name):
                    logger.warning(f"Keeping {path}: a committed manifest entry references it")
                    return False
            except ManifestError as e:
                logger.warning(f"Cannot check manifest references to {path}: {e}")

            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                logger.error(f"Failed to discard uncommitted archive copy {path}: {e}")
                return False

        logger.debug(f"Discarded uncommitted archive copy {path}")
        return True


def _claim(source: Path, destination: Path) -> bool:
    """Copy source to destination unless the name is taken."""
    if destination.exists():
        return False
    try:
        atomic_copy(source, destination, exclusive=True)
    except FileExistsError:
        return False
    return True
