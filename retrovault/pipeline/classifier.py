"""Classification phase: assigns a platform to a raw file by its extension."""

import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Union

from retrovault.config.settings import PipelineSettings
from .types import PhaseResult, ROMFile, utc_timestamp

logger = logging.getLogger(__name__)


class Classifier:
    """
    Classifies files by extension against the platform table.

    Classification is pure inspection; staging the file into the
    validation workspace is a separate step (move_to_validation) so it
    can be exercised without touching storage.
    """

    def __init__(self, settings: PipelineSettings):
        """
        Initialize classifier.

        Args:
            settings: Pipeline settings (platform table, workspace layout)
        """
        self.settings = settings

    def classify(self, file_path: Union[str, Path]) -> PhaseResult[ROMFile]:
        """
        Classify a file and build its ROM record.

        Args:
            file_path: Path to the submitted file

        Returns:
            PhaseResult with a ROMFile whose platform is set, or a failure
            for unknown extensions and unusable paths
        """
        if file_path is None or str(file_path).strip() == '':
            return PhaseResult.fail("Invalid input: file path is required")

        raw = Path(file_path)
        if '..' in raw.parts:
            return PhaseResult.fail(f"Invalid file path: {file_path}")

        try:
            path = raw.expanduser().resolve()
            if not path.exists():
                return PhaseResult.fail(f"File not found: {file_path}")
            if path.is_dir():
                return PhaseResult.fail("Invalid input: path is a directory, not a file")
            size = path.stat().st_size
        except OSError as e:
            return PhaseResult.fail(f"Cannot inspect {file_path}: {e}")

        extension = path.suffix.lower()
        candidates = self.settings.platforms.find_by_extension(extension) if extension else []

        if not candidates:
            return PhaseResult.fail(f"Unknown file extension: {extension or '(none)'}")

        platform = candidates[0]
        metadata = {
            'classifiedAt': utc_timestamp(),
            'platformName': platform.name,
        }
        if len(candidates) > 1:
            metadata['candidatePlatforms'] = [p.id for p in candidates]
            logger.debug(
                f"{path.name}: extension {extension} shared by "
                f"{', '.join(p.id for p in candidates)}; using {platform.id}"
            )

        rom = ROMFile(
            id=self._generate_rom_id(path.name),
            filename=path.name,
            path=path,
            extension=extension,
            size=size,
            platform=platform.id,
            metadata=metadata,
        )

        return PhaseResult.ok(rom)

    def move_to_validation(self, rom: ROMFile) -> PhaseResult[str]:
        """
        Stage a classified ROM into the validation workspace.

        Moves the file to <workspace>/validation/<platform>/<filename> and
        updates rom.path.

        Args:
            rom: Classified ROM

        Returns:
            PhaseResult with the staged path
        """
        if rom is None:
            return PhaseResult.fail("Invalid input: ROM object is null or undefined")

        if not rom.platform or not rom.platform.strip():
            return PhaseResult.fail("Invalid input: ROM platform is required")

        if not rom.filename or not rom.filename.strip():
            return PhaseResult.fail("Invalid input: ROM filename is required")

        destination = self.settings.validation_dir / rom.platform / rom.filename

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(rom.path), str(destination))
        except OSError as e:
            logger.error(f"Failed to stage {rom.filename}: {e}")
            return PhaseResult.fail(f"Storage error: failed to stage {rom.filename}: {e}")

        rom.path = destination
        return PhaseResult.ok(str(destination), movedAt=utc_timestamp())

    @staticmethod
    def _generate_rom_id(filename: str) -> str:
        """Generate a unique ROM id derived from its filename."""
        slug = re.sub(r'[^a-z0-9]+', '-', filename.lower()).strip('-') or 'rom'
        return f"rom-{slug}-{uuid.uuid4().hex[:12]}"
