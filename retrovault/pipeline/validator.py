"""
Validation phase.

Each check returns its own PhaseResult and can be called on its own; the
orchestrator runs them in this order and stops at the first failure:

1. generate_hash
2. check_duplicate
3. validate_integrity
4. check_companion_files
5. validate_bios_dependencies
6. validate_naming
"""

import logging
import os
import re
import unicodedata
from pathlib import Path
from typing import List, Optional

from retrovault.config.settings import PipelineSettings
from .hashing import calculate_hash
from .manifest import ManifestError, ManifestStore
from .types import PhaseResult, ROMFile, utc_timestamp

logger = logging.getLogger(__name__)

CUE_FILE_PATTERN = re.compile(r'^\s*FILE\s+(?:"([^"]+)"|(\S+))', re.IGNORECASE)


class Validator:
    """Validates ROM content, dependencies and naming before archival."""

    def __init__(self, settings: PipelineSettings, manifests: ManifestStore):
        """
        Initialize validator.

        Args:
            settings: Pipeline settings
            manifests: Manifest store shared with the archiver (dedup index)
        """
        self.settings = settings
        self.manifests = manifests

    def generate_hash(self, rom: ROMFile) -> PhaseResult[str]:
        """Hash the full file content."""
        algorithm = self.settings.hash_algorithm
        try:
            digest = calculate_hash(Path(rom.path), algorithm)
        except OSError as e:
            return PhaseResult.fail(f"Hash generation failed for {rom.filename}: {e}")

        return PhaseResult.ok(
            digest,
            algorithm=algorithm,
            generatedAt=utc_timestamp(),
            fileSize=rom.size,
        )

    def check_duplicate(self, hash_value: str, platform: Optional[str] = None) -> PhaseResult[bool]:
        """
        Look a hash up in the manifest index.

        Args:
            hash_value: Content hash
            platform: Platform manifest to search; every platform when None

        Returns:
            PhaseResult whose data is True when the hash is already archived
        """
        if not hash_value:
            return PhaseResult.fail("Invalid input: hash is required for duplicate check")

        try:
            duplicate = self.manifests.contains(hash_value, platform)
        except ManifestError as e:
            return PhaseResult.fail(f"Storage error: {e}")
        except OSError as e:
            return PhaseResult.fail(f"Storage error: cannot read manifest: {e}")

        return PhaseResult.ok(duplicate, checkedAt=utc_timestamp())

    def validate_integrity(self, rom: ROMFile) -> PhaseResult[bool]:
        """
        Structural sanity checks for the container.

        The file must be readable and at least the platform's minimum size;
        platforms declaring header magic must start with it.
        """
        path = Path(rom.path)
        if not path.is_file() or not os.access(path, os.R_OK):
            return PhaseResult.fail(f"File not readable: {rom.filename}", data=False)

        platform = self.settings.platforms.get(rom.platform)
        min_size = platform.min_size if platform else 1

        try:
            size = path.stat().st_size
            if size < min_size:
                if size == 0:
                    return PhaseResult.fail(f"Integrity check failed: {rom.filename} is empty", data=False)
                return PhaseResult.fail(
                    f"Integrity check failed: {rom.filename} is {size} bytes, "
                    f"minimum for {rom.platform} is {min_size}",
                    data=False,
                )

            if platform and platform.header:
                with open(path, 'rb') as f:
                    magic = f.read(len(platform.header))
                if magic != platform.header:
                    return PhaseResult.fail(
                        f"Integrity check failed: {rom.filename} is missing the "
                        f"{platform.id} header",
                        data=False,
                    )
        except OSError as e:
            return PhaseResult.fail(f"File access error: {e}", data=False)

        return PhaseResult.ok(True, validatedAt=utc_timestamp())

    def check_companion_files(self, rom: ROMFile) -> PhaseResult[List[str]]:
        """
        Verify companion files (cue sheets, referenced tracks) are present.

        Returns:
            PhaseResult with companion paths; a failure lists what is missing
        """
        path = Path(rom.path)
        platform = self.settings.platforms.get(rom.platform)
        required_exts = platform.companion_files.get(rom.extension, []) if platform else []

        found: List[str] = []
        missing: List[str] = []

        for ext in required_exts:
            companion = _find_sibling(path.parent, path.stem + ext)
            if companion is None:
                missing.append(path.stem + ext)
            else:
                found.append(str(companion))

        if rom.extension == '.cue':
            try:
                referenced = _parse_cue_files(path)
            except OSError as e:
                return PhaseResult.fail(f"Cannot read cue sheet {rom.filename}: {e}", data=[])
            for name in referenced:
                track = path.parent / name
                if track.is_file():
                    found.append(str(track))
                else:
                    missing.append(name)

        if missing:
            return PhaseResult.fail(
                f"Missing companion files for {rom.filename}: {', '.join(missing)}",
                data=found,
                missing=missing,
            )

        return PhaseResult.ok(
            found,
            checkedAt=utc_timestamp(),
            companionFilesFound=len(found),
        )

    def validate_bios_dependencies(self, rom: ROMFile) -> PhaseResult[bool]:
        """
        Confirm every BIOS file the platform requires is in the archive.

        A missing BIOS marks the ROM for quarantine rather than rejection.
        """
        platform = self.settings.platforms.get(rom.platform)
        if platform is None:
            return PhaseResult.fail(f"Platform not found: {rom.platform}", data=False)

        if not platform.requires_bios:
            return PhaseResult.ok(True, biosRequired=False)

        bios_dir = self.settings.bios_dir
        missing = [
            name for name in platform.bios_files
            if not (bios_dir / name).is_file() and not (bios_dir / platform.id / name).is_file()
        ]

        if missing:
            return PhaseResult.fail(
                f"Missing required BIOS for {platform.id}: {', '.join(missing)}",
                data=False,
                biosRequired=True,
                missingBios=missing,
                quarantine=True,
            )

        return PhaseResult.ok(True, biosRequired=True, biosFiles=list(platform.bios_files))

    def validate_naming(self, rom: ROMFile) -> PhaseResult[bool]:
        """Check the filename is safe and matches the platform's pattern."""
        filename = rom.filename if rom is not None else None

        if not filename or not filename.strip():
            return PhaseResult.fail("Invalid filename: filename is empty", data=False)

        if '/' in filename or '\\' in filename or '..' in filename:
            return PhaseResult.fail(
                f"Invalid filename: path traversal sequence in {filename!r}", data=False
            )

        if any(unicodedata.category(ch) == 'Cc' for ch in filename):
            return PhaseResult.fail(
                f"Invalid filename: control characters in {filename!r}", data=False
            )

        platform = self.settings.platforms.get(rom.platform)
        if platform and platform.naming_pattern:
            if not re.fullmatch(platform.naming_pattern, filename):
                return PhaseResult.fail(
                    f"Invalid filename: {filename!r} does not match the "
                    f"{platform.id} naming pattern",
                    data=False,
                )

        return PhaseResult.ok(True, validatedAt=utc_timestamp())


def _find_sibling(directory: Path, name: str) -> Optional[Path]:
    """Find a file in directory by name, ignoring case."""
    exact = directory / name
    if exact.is_file():
        return exact

    lowered = name.lower()
    try:
        for entry in directory.iterdir():
            if entry.name.lower() == lowered and entry.is_file():
                return entry
    except OSError:
        return None
    return None


def _parse_cue_files(cue_path: Path) -> List[str]:
    """Return the track files referenced by FILE lines of a cue sheet."""
    referenced = []
    with open(cue_path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            match = CUE_FILE_PATTERN.match(line)
            if match:
                referenced.append(match.group(1) or match.group(2))
    return referenced
