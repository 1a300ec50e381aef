"""
Per-ROM pipeline orchestration.

Runs one file through the phases:
1. Classify (and optionally stage into the validation workspace)
2. Validate (hash, dedup, integrity, companions, BIOS, naming)
3. Normalize (canonical name, CHD, metadata record)
4. Archive (copy, manifest commit, metadata record)
5. Promote (sync directory, playlist, thumbnails)

The first failing check stops the ROM; nothing is retried.
"""

import dataclasses
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config.settings import PipelineSettings
from ..errors import FatalPipelineError
from ..plugins.manifest import PLUGIN_CONTRACTS, Plugin, PluginType
from ..plugins.registry import PluginRegistry
from ..plugins.sandbox import PluginSandbox
from .archiver import Archiver
from .classifier import Classifier
from .hashing import calculate_hash
from .manifest import ManifestStore
from .normalizer import Normalizer
from .promoter import Promoter
from .storage import KeyedLocks, atomic_copy
from .types import ManifestEntry, PhaseResult, ROMFile, Stage, utc_timestamp
from .validator import Validator

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Outcome of running one file through the pipeline."""
    success: bool = False
    rom: Optional[ROMFile] = None
    errors: List[str] = field(default_factory=list)
    phase: Optional[str] = None          # Failing phase, or last phase run
    stage: Optional[Stage] = None        # Furthest stage reached
    phase_results: Dict[str, PhaseResult] = field(default_factory=dict)
    quarantined: bool = False
    archived_path: Optional[str] = None
    promoted_path: Optional[str] = None

    @property
    def error(self) -> Optional[str]:
        return self.errors[0] if self.errors else None

    def fail(self, phase: str, error: str) -> 'PipelineResult':
        self.success = False
        self.phase = phase
        self.stage = Stage.FAILED
        self.errors.append(error)
        return self


class SandboxedPhase:
    """
    Exposes a plugin capability with the interface of a built-in phase.

    Every method call runs through the sandbox. Plugin exceptions become
    failed PhaseResults; fatal errors (e.g. a vanished entry point) are
    re-raised.
    """

    def __init__(self, plugin: Plugin, sandbox: PluginSandbox):
        self._plugin = plugin
        self._sandbox = sandbox

    @property
    def plugin_id(self) -> str:
        return self._plugin.id

    def __getattr__(self, name: str):
        if name.startswith('_'):
            raise AttributeError(name)
        # Contract methods dispatch even when missing; the sandbox raises the fatal error
        contract = PLUGIN_CONTRACTS.get(self._plugin.type, ())
        if name not in contract and not callable(getattr(self._plugin.capability, name, None)):
            raise AttributeError(name)

        def call(*args, **kwargs):
            try:
                outcome = self._sandbox.execute(self._plugin, name, *args, **kwargs)
            except FatalPipelineError:
                raise
            except Exception as e:
                logger.warning(f"Plugin {self._plugin.id}.{name}() failed: {e}")
                return PhaseResult.fail(f"Plugin {self._plugin.id} failed in {name}: {e}")

            if not isinstance(outcome, PhaseResult):
                return PhaseResult.fail(
                    f"Plugin {self._plugin.id} returned an invalid result from {name}"
                )
            return outcome

        return call


class PipelineOrchestrator:
    """
    Drives a single ROM through every enabled phase.

    Example:
        orchestrator = PipelineOrchestrator.from_settings(settings)
        result = orchestrator.process('/incoming/Zelda.nes')
        if not result.success:
            print(result.phase, result.error)
    """

    def __init__(
        self,
        settings: PipelineSettings,
        classifier: Any,
        validator: Any,
        normalizer: Any,
        archiver: Any,
        promoter: Any,
        playlist_generator: Any = None,
        thumbnail_provider: Any = None,
        manifests: Optional[ManifestStore] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            settings: Pipeline settings (phase flags, directories)
            classifier: Classification phase
            validator: Validation phase
            normalizer: Normalization phase
            archiver: Archival phase
            promoter: Promotion phase
            playlist_generator: Playlist updater (defaults to the promoter)
            thumbnail_provider: Thumbnail syncer (defaults to the promoter)
            manifests: Manifest store whose platform locks cover archival
        """
        self.settings = settings
        self.classifier = classifier
        self.validator = validator
        self.normalizer = normalizer
        self.archiver = archiver
        self.promoter = promoter
        self.playlist_generator = playlist_generator or promoter
        self.thumbnail_provider = thumbnail_provider or promoter
        self._archive_locks = manifests.locks if manifests is not None else KeyedLocks()

        # Staging is storage work, so plugin classifiers without it still stage
        if hasattr(classifier, 'move_to_validation'):
            self._stager = classifier
        else:
            self._stager = Classifier(settings)

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        registry: Optional[PluginRegistry] = None,
        sandbox: Optional[PluginSandbox] = None,
        manifests: Optional[ManifestStore] = None,
    ) -> 'PipelineOrchestrator':
        """
        Build an orchestrator with built-in phases, substituting the active
        plugin of each phase type when one is registered.
        """
        sandbox = sandbox or PluginSandbox(timeout=settings.plugin_timeout)
        manifests = manifests or ManifestStore(settings.manifests_dir)

        def pick(plugin_type: PluginType, default: Any) -> Any:
            plugin = registry.get_active(plugin_type) if registry else None
            if plugin is None:
                return default
            logger.info(f"Using plugin {plugin.id} for {plugin_type.value}")
            return SandboxedPhase(plugin, sandbox)

        promoter = pick(PluginType.PROMOTER, Promoter(settings))

        return cls(
            settings,
            classifier=pick(PluginType.CLASSIFIER, Classifier(settings)),
            validator=pick(PluginType.VALIDATOR, Validator(settings, manifests)),
            normalizer=pick(PluginType.NORMALIZER, Normalizer(settings, registry, sandbox)),
            archiver=pick(PluginType.ARCHIVER, Archiver(settings, manifests)),
            promoter=promoter,
            playlist_generator=pick(PluginType.PLAYLIST_GENERATOR, promoter),
            thumbnail_provider=pick(PluginType.THUMBNAIL_PROVIDER, promoter),
            manifests=manifests,
        )

    def process(self, file_path: Union[str, Path]) -> PipelineResult:
        """
        Run one file through the pipeline.

        Args:
            file_path: Path to the submitted file

        Returns:
            PipelineResult; on failure 'phase' and 'errors' identify the
            first failing check

        Raises:
            FatalPipelineError: On errors that invalidate the whole run
        """
        result = PipelineResult()

        rom = self._classify(result, file_path)
        if rom is None:
            return result

        if self.settings.enable_validator:
            if not self._validate(result, rom):
                return result
        result.stage = Stage.VALIDATED

        if self.settings.enable_normalizer:
            rom = self._normalize(result, rom)
            if rom is None:
                return result
        result.stage = Stage.NORMALIZED
        result.rom = rom

        if self.settings.enable_archiver:
            rom = self._archive(result, rom)
            if rom is None:
                return result
            result.rom = rom
        result.stage = Stage.ARCHIVED

        if self.settings.enable_promoter:
            if not self._promote(result, rom):
                return result
        result.stage = Stage.PROMOTED

        result.success = True
        logger.debug(f"{rom.filename}: pipeline complete ({rom.platform}, {rom.hash})")
        return result

    def _step(self, result: PipelineResult, phase: str, check: str, func, *args) -> PhaseResult:
        """Run one check, record it, and mark the result failed if it fails."""
        result.phase = phase
        outcome = func(*args)
        result.phase_results[check] = outcome

        if not outcome.success:
            result.fail(phase, outcome.error or f"{check} failed")
            logger.warning(f"{_label(result, args)}: {check} failed: {outcome.error}")
        return outcome

    def _classify(self, result: PipelineResult, file_path) -> Optional[ROMFile]:
        if not self.settings.enable_classifier:
            result.fail('classifier', "Classifier phase is disabled")
            return None

        outcome = self._step(result, 'classifier', 'classify', self.classifier.classify, file_path)
        if not outcome.success:
            return None

        rom = outcome.data
        result.rom = rom
        result.stage = Stage.CLASSIFIED

        if self.settings.stage_to_validation:
            staged = self._step(
                result, 'classifier', 'move_to_validation', self._stager.move_to_validation, rom
            )
            if not staged.success:
                return None

        return rom

    def _validate(self, result: PipelineResult, rom: ROMFile) -> bool:
        v = self.validator

        outcome = self._step(result, 'validator', 'generate_hash', v.generate_hash, rom)
        if not outcome.success:
            return False
        rom.hash = outcome.data

        outcome = self._step(result, 'validator', 'check_duplicate', v.check_duplicate, rom.hash, rom.platform)
        if not outcome.success:
            return False
        if outcome.data:
            result.fail(
                'validator',
                f"Duplicate ROM: {rom.filename} (hash {rom.hash}) is already archived for {rom.platform}",
            )
            logger.warning(f"{rom.filename}: duplicate of an archived ROM")
            return False

        for check in ('validate_integrity', 'check_companion_files',
                      'validate_bios_dependencies', 'validate_naming'):
            outcome = self._step(result, 'validator', check, getattr(v, check), rom)
            if not outcome.success:
                if outcome.metadata.get('quarantine'):
                    self._quarantine(result, rom)
                return False

        return True

    def _normalize(self, result: PipelineResult, rom: ROMFile) -> Optional[ROMFile]:
        n = self.normalizer

        outcome = self._step(result, 'normalizer', 'apply_naming_pattern', n.apply_naming_pattern, rom)
        if not outcome.success:
            return None
        rom = outcome.data

        outcome = self._step(result, 'normalizer', 'convert_to_chd', n.convert_to_chd, rom)
        if not outcome.success:
            return None
        if outcome.metadata.get('converted'):
            rom = outcome.data
            try:
                rom.size = Path(rom.path).stat().st_size
                rom.hash = calculate_hash(Path(rom.path), self.settings.hash_algorithm)
            except OSError as e:
                logger.error(f"Cannot read converted image {rom.path}: {e}")
                result.fail('normalizer', f"Storage error: cannot read converted image: {e}")
                return None

        outcome = self._step(result, 'normalizer', 'generate_metadata', n.generate_metadata, rom)
        if not outcome.success:
            return None
        rom.metadata['record'] = outcome.data

        return rom

    def _archive(self, result: PipelineResult, rom: ROMFile) -> Optional[ROMFile]:
        a = self.archiver

        if not rom.hash:
            # Validator disabled; the manifest still needs a content hash
            try:
                rom.hash = calculate_hash(Path(rom.path), self.settings.hash_algorithm)
            except OSError as e:
                logger.error(f"Cannot hash {rom.path}: {e}")
                result.fail('archiver', f"Storage error: cannot hash {rom.filename}: {e}")
                return None

        # Placement through commit (or discard) is one step per platform
        with self._archive_locks.hold(rom.platform):
            outcome = self._step(result, 'archiver', 'archive_rom', a.archive_rom, rom)
            if not outcome.success:
                return None
            archived_path = outcome.data
            created = outcome.metadata.get('created', True)
            archived_at = outcome.metadata.get('archivedAt') or utc_timestamp()

            entry = ManifestEntry(
                id=rom.id,
                filename=Path(archived_path).name,
                platform=rom.platform,
                hash=rom.hash,
                size=rom.size,
                extension=rom.extension,
                archived_at=archived_at,
                metadata={'originalName': rom.metadata.get('originalName', rom.filename)},
            )

            outcome = self._step(result, 'archiver', 'write_manifest', a.write_manifest, entry)
            if not outcome.success:
                discard = getattr(a, 'discard', None)
                if created and discard is not None:
                    discard(archived_path)
                return None

        metadata = dict(rom.metadata)
        metadata['archivedAt'] = archived_at
        archived = dataclasses.replace(
            rom,
            filename=entry.filename,
            path=Path(archived_path),
            metadata=metadata,
            archived=True,
        )
        result.archived_path = archived_path

        outcome = self._step(result, 'archiver', 'store_metadata', a.store_metadata, archived)
        if not outcome.success:
            return None

        logger.info(f"Archived {archived.filename} ({archived.platform})")
        return archived

    def _promote(self, result: PipelineResult, rom: ROMFile) -> bool:
        outcome = self._step(result, 'promoter', 'promote_rom', self.promoter.promote_rom, _copy(rom))
        if not outcome.success:
            return False
        result.promoted_path = outcome.data

        outcome = self._step(
            result, 'promoter', 'update_playlist', self.playlist_generator.update_playlist, _copy(rom)
        )
        if not outcome.success:
            return False

        # Artwork is best effort and never fails the ROM
        thumbs = self.thumbnail_provider.sync_thumbnails(_copy(rom))
        result.phase_results['sync_thumbnails'] = thumbs
        if not thumbs.success:
            logger.warning(f"{rom.filename}: thumbnail sync failed: {thumbs.error}")

        return True

    def _quarantine(self, result: PipelineResult, rom: ROMFile) -> None:
        """Set a ROM aside until its BIOS is supplied: move if staged, copy otherwise."""
        source = Path(rom.path)
        destination = self.settings.quarantine_dir / rom.platform / rom.filename

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if _is_within(source, self.settings.validation_dir):
                shutil.move(str(source), str(destination))
                rom.path = destination
            else:
                atomic_copy(source, destination)
        except OSError as e:
            logger.error(f"Failed to quarantine {rom.filename}: {e}")
            return

        rom.metadata['quarantinedAt'] = utc_timestamp()
        rom.metadata['quarantinePath'] = str(destination)
        result.quarantined = True
        logger.warning(f"Quarantined {rom.filename} -> {destination}")


def _copy(rom: ROMFile) -> ROMFile:
    return dataclasses.replace(rom, metadata=dict(rom.metadata))


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return True


def _label(result: PipelineResult, args) -> str:
    if result.rom is not None:
        return result.rom.filename
    return str(args[0]) if args else '(unknown)'
