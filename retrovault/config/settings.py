"""
Resolved pipeline settings.

Turns the configuration dictionary into concrete directories and flags so
pipeline phases never read raw config keys themselves.

Directory layout:
    <archive>/roms/<platform>/          archived ROM files
    <archive>/bios/                     BIOS files checked by the validator
    <archive>/manifests/<platform>.json append-only manifests
    <archive>/manifests/metadata/       per-ROM metadata records
    <sync>/content/roms/<platform>/     promoted ROMs
    <sync>/playlists/<db_name>.lpl      RetroArch playlists
    <thumbnails>/<db_name>/Named_Boxarts/
    <workspace>/validation|quarantine/<platform>/
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from retrovault.config.loader import merge_defaults
from retrovault.config.platforms import PlatformTable, load_platform_table


@dataclass
class PipelineSettings:
    """Directories, phase flags and platform table for one pipeline."""
    archive_root: Path
    sync_root: Path
    thumbnails_root: Path
    workspace_root: Path
    platforms: PlatformTable
    artwork_root: Optional[Path] = None

    enable_classifier: bool = True
    enable_validator: bool = True
    enable_normalizer: bool = True
    enable_archiver: bool = True
    enable_promoter: bool = True
    enable_chd_conversion: bool = False
    enable_thumbnails: bool = False
    stage_to_validation: bool = False
    link_promoted: bool = True
    hash_algorithm: str = 'sha256'
    plugin_timeout: Optional[float] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'PipelineSettings':
        """
        Build settings from a (validated) configuration dictionary.

        Args:
            config: Configuration dictionary

        Returns:
            PipelineSettings

        Raises:
            PlatformConfigError: If the configured platform table is malformed
        """
        config = merge_defaults(config)
        paths = config['paths']
        pipeline = config['pipeline']

        platforms_file = paths.get('platforms')
        platforms = load_platform_table(
            Path(platforms_file).expanduser() if platforms_file else None
        )

        artwork = paths.get('artwork')

        return cls(
            archive_root=_resolve(paths['archive']),
            sync_root=_resolve(paths['sync']),
            thumbnails_root=_resolve(paths['thumbnails']),
            workspace_root=_resolve(paths['workspace']),
            artwork_root=_resolve(artwork) if artwork else None,
            platforms=platforms,
            enable_classifier=pipeline.get('enable_classifier', True),
            enable_validator=pipeline.get('enable_validator', True),
            enable_normalizer=pipeline.get('enable_normalizer', True),
            enable_archiver=pipeline.get('enable_archiver', True),
            enable_promoter=pipeline.get('enable_promoter', True),
            enable_chd_conversion=pipeline.get('enable_chd_conversion', False),
            enable_thumbnails=pipeline.get('enable_thumbnails', False),
            stage_to_validation=pipeline.get('stage_to_validation', False),
            link_promoted=pipeline.get('link_promoted', True),
            hash_algorithm=pipeline.get('hash_algorithm', 'sha256'),
            plugin_timeout=config.get('plugins', {}).get('execution_timeout'),
        )

    # Archive layout
    @property
    def archive_roms_dir(self) -> Path:
        return self.archive_root / 'roms'

    @property
    def bios_dir(self) -> Path:
        return self.archive_root / 'bios'

    @property
    def manifests_dir(self) -> Path:
        return self.archive_root / 'manifests'

    @property
    def metadata_dir(self) -> Path:
        return self.manifests_dir / 'metadata'

    # Sync layout
    @property
    def sync_roms_dir(self) -> Path:
        return self.sync_root / 'content' / 'roms'

    @property
    def playlists_dir(self) -> Path:
        return self.sync_root / 'playlists'

    # Workspace layout
    @property
    def validation_dir(self) -> Path:
        return self.workspace_root / 'validation'

    @property
    def quarantine_dir(self) -> Path:
        return self.workspace_root / 'quarantine'


def _resolve(path_str: str) -> Path:
    """Expand user home directory and make absolute."""
    return Path(path_str).expanduser().resolve()
