"""
Normalization phase: canonical filenames, CHD conversion gate and the
metadata record stored alongside each archived ROM.
"""

import dataclasses
import logging
import re
import unicodedata
from typing import Any, Dict, Optional

from retrovault.config.settings import PipelineSettings
from retrovault.errors import FatalPipelineError
from retrovault.plugins.manifest import PluginType
from retrovault.plugins.registry import PluginRegistry
from retrovault.plugins.sandbox import PluginSandbox
from .types import PhaseResult, ROMFile, utc_timestamp

logger = logging.getLogger(__name__)

# Characters that are invalid in filenames on at least one supported filesystem
INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
WHITESPACE_RUN = re.compile(r'[\s_]+')


def canonical_filename(filename: str) -> str:
    """
    Canonical form of a ROM filename.

    NFC-normalized, filesystem-invalid and control characters removed,
    whitespace/underscore runs collapsed to one space, trimmed, extension
    lower-cased.

    Example:
        canonical_filename('Super__Mario   Bros?.NES') -> 'Super Mario Bros.nes'
    """
    name = unicodedata.normalize('NFC', filename)
    stem, dot, ext = name.rpartition('.')
    if not dot:
        stem, ext = name, ''

    stem = INVALID_FILENAME_CHARS.sub('', stem)
    stem = WHITESPACE_RUN.sub(' ', stem)
    stem = ''.join(ch for ch in stem if unicodedata.category(ch) != 'Cc').strip()

    ext = INVALID_FILENAME_CHARS.sub('', ext).strip().lower()
    return f"{stem}.{ext}" if ext else stem


class Normalizer:
    """Produces the canonical form of a validated ROM."""

    def __init__(
        self,
        settings: PipelineSettings,
        registry: Optional[PluginRegistry] = None,
        sandbox: Optional[PluginSandbox] = None,
    ):
        """
        Initialize normalizer.

        Args:
            settings: Pipeline settings
            registry: Plugin registry consulted for chd-converter and
                metadata-scraper plugins
            sandbox: Sandbox plugin calls run in
        """
        self.settings = settings
        self.registry = registry
        self.sandbox = sandbox or PluginSandbox(timeout=settings.plugin_timeout)

    def apply_naming_pattern(self, rom: Optional[ROMFile]) -> PhaseResult[ROMFile]:
        """
        Rename a ROM to its canonical filename.

        The file on disk is untouched; the archiver writes it under the new
        name.

        Returns:
            PhaseResult with a new ROMFile carrying the canonical filename
        """
        if rom is None:
            return PhaseResult.fail("Invalid input: ROM filename is required")
        if not rom.filename or not rom.filename.strip():
            return PhaseResult.fail("Invalid input: ROM filename is required")
        if not rom.platform:
            return PhaseResult.fail("Invalid input: ROM platform is required")
        if not rom.extension:
            return PhaseResult.fail("Invalid input: ROM extension is required")

        normalized = canonical_filename(rom.filename)
        if not normalized or normalized.startswith('.'):
            return PhaseResult.fail(
                f"Invalid filename: {rom.filename!r} is empty after normalization"
            )

        if normalized != rom.filename:
            logger.debug(f"Normalized filename: {rom.filename} -> {normalized}")

        metadata = dict(rom.metadata)
        metadata['originalName'] = rom.filename
        metadata['normalizedAt'] = utc_timestamp()

        renamed = dataclasses.replace(
            rom,
            filename=normalized,
            extension=rom.extension.lower(),
            metadata=metadata,
        )
        return PhaseResult.ok(renamed, originalName=rom.filename, changed=normalized != rom.filename)

    def convert_to_chd(self, rom: Optional[ROMFile]) -> PhaseResult[ROMFile]:
        """
        Convert a disc image to CHD when enabled and a converter is available.

        Conversion itself is delegated to the active chd-converter plugin;
        without one the ROM passes through unchanged.
        """
        if rom is None:
            return PhaseResult.fail("Invalid input: ROM is required")
        if not rom.platform:
            return PhaseResult.fail("Invalid input: ROM platform is required")

        if not self.settings.enable_chd_conversion:
            return PhaseResult.ok(rom, converted=False, reason="CHD conversion disabled")

        platform = self.settings.platforms.get(rom.platform)
        if platform is None or not platform.chd or rom.extension == '.chd':
            return PhaseResult.ok(rom, converted=False, reason="Platform does not use CHD")

        converter = self.registry.get_active(PluginType.CHD_CONVERTER) if self.registry else None
        if converter is None:
            return PhaseResult.ok(rom, converted=False, reason="CHD conversion not yet implemented")

        try:
            converted = self.sandbox.execute(converter, 'convert', dataclasses.replace(rom))
        except FatalPipelineError:
            raise
        except Exception as e:
            logger.warning(f"CHD conversion of {rom.filename} failed: {e}")
            return PhaseResult.fail(f"CHD conversion failed for {rom.filename}: {e}")

        if not isinstance(converted, ROMFile):
            return PhaseResult.fail(
                f"CHD converter {converter.id} returned {type(converted).__name__}, expected ROMFile"
            )

        return PhaseResult.ok(converted, converted=True, converter=converter.id)

    def generate_metadata(self, rom: Optional[ROMFile]) -> PhaseResult[Dict[str, Any]]:
        """
        Build the metadata record stored next to the manifest.

        Returns:
            PhaseResult with {platform, filename, size, extension,
            generatedAt[, hash][, scraped]}; failures name the bad field
        """
        if rom is None:
            return PhaseResult.fail("Invalid input: ROM is required")

        if not rom.platform:
            return PhaseResult.fail("Invalid metadata: platform is required")
        if not rom.filename or not rom.filename.strip():
            return PhaseResult.fail("Invalid metadata: filename is required")
        if rom.size is None:
            return PhaseResult.fail("Invalid metadata: size is required")
        if rom.size < 0:
            return PhaseResult.fail(f"Invalid metadata: size must be non-negative, got {rom.size}")
        if not rom.extension:
            return PhaseResult.fail("Invalid metadata: extension is required")

        record: Dict[str, Any] = {
            'platform': rom.platform,
            'filename': rom.filename,
            'size': rom.size,
            'extension': rom.extension,
            'generatedAt': utc_timestamp(),
        }
        if rom.hash:
            record['hash'] = rom.hash

        scraped = self._scrape(rom)
        if scraped:
            record['scraped'] = scraped

        return PhaseResult.ok(record)

    def _scrape(self, rom: ROMFile) -> Optional[Dict[str, Any]]:
        """Best-effort lookup through the active metadata-scraper plugin."""
        scraper = self.registry.get_active(PluginType.METADATA_SCRAPER) if self.registry else None
        if scraper is None:
            return None

        try:
            result = self.sandbox.execute(scraper, 'scrape', dataclasses.replace(rom))
        except FatalPipelineError:
            raise
        except Exception as e:
            logger.warning(f"Metadata scraper {scraper.id} failed for {rom.filename}: {e}")
            return None

        return dict(result) if isinstance(result, dict) else None
