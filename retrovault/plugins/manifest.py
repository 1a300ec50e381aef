"""
Plugin manifest and record types.

A plugin is a plain record of its manifest and the capability object its
entry point produced; the registry dispatches on manifest.type.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

API_VERSION = "1.2.0"


class PluginError(Exception):
    """Base class for plugin errors."""
    pass


class PluginValidationError(PluginError):
    """Plugin manifest or capability is invalid."""
    pass


class PluginType(str, Enum):
    """Kinds of plugin the host knows how to dispatch."""
    CLASSIFIER = "classifier"
    VALIDATOR = "validator"
    NORMALIZER = "normalizer"
    ARCHIVER = "archiver"
    PROMOTER = "promoter"
    PLAYLIST_GENERATOR = "playlist-generator"
    THUMBNAIL_PROVIDER = "thumbnail-provider"
    STORAGE_BACKEND = "storage-backend"
    METADATA_SCRAPER = "metadata-scraper"
    CHD_CONVERTER = "chd-converter"


# Methods a capability must provide for each plugin type
PLUGIN_CONTRACTS: Dict[str, Tuple[str, ...]] = {
    PluginType.CLASSIFIER.value: ('classify',),
    PluginType.VALIDATOR.value: (
        'generate_hash',
        'check_duplicate',
        'validate_integrity',
        'check_companion_files',
        'validate_bios_dependencies',
        'validate_naming',
    ),
    PluginType.NORMALIZER.value: ('apply_naming_pattern', 'convert_to_chd', 'generate_metadata'),
    PluginType.ARCHIVER.value: ('archive_rom', 'write_manifest', 'store_metadata'),
    PluginType.PROMOTER.value: ('promote_rom', 'update_playlist', 'sync_thumbnails'),
    PluginType.PLAYLIST_GENERATOR.value: ('update_playlist',),
    PluginType.THUMBNAIL_PROVIDER.value: ('sync_thumbnails',),
    PluginType.STORAGE_BACKEND.value: ('store', 'retrieve'),
    PluginType.METADATA_SCRAPER.value: ('scrape',),
    PluginType.CHD_CONVERTER.value: ('convert',),
}


def parse_version(version: str) -> Tuple[int, int]:
    """
    Parse 'major.minor[.patch]' into (major, minor).

    Raises:
        ValueError: If the version string is malformed
    """
    parts = str(version).strip().split('.')
    if len(parts) < 2 or len(parts) > 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid version: {version!r}")
    return int(parts[0]), int(parts[1])


@dataclass
class PluginLicense:
    """License presented for a marketplace plugin."""
    key: str
    type: str                        # 'subscription' | 'perpetual'
    expires_at: Optional[str] = None  # ISO-8601; subscriptions only
    features: List[str] = field(default_factory=list)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Check the license has a key and has not expired."""
        if not self.key:
            return False
        if self.type == 'perpetual':
            return True
        if self.type != 'subscription' or not self.expires_at:
            return False

        try:
            expires = datetime.fromisoformat(self.expires_at.replace('Z', '+00:00'))
        except ValueError:
            return False
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)

        return expires > (now or datetime.now(timezone.utc))


@dataclass
class PluginManifest:
    """Static description of a plugin."""
    id: str
    name: str
    version: str
    type: str
    api_version: str
    entry_point: str
    description: Optional[str] = None
    author: Optional[str] = None
    is_premium: bool = False
    requires_license: bool = False
    dependencies: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PluginManifest':
        """
        Build a manifest from its dictionary form.

        Accepts both snake_case and camelCase keys (apiVersion, entryPoint,
        isPremium, requiresLicense).

        Raises:
            PluginValidationError: If a required key is missing
        """
        if not isinstance(data, dict):
            raise PluginValidationError("Plugin manifest must be a mapping")

        def pick(*keys, default=None):
            for key in keys:
                if key in data:
                    return data[key]
            return default

        missing = [
            key for key, value in (
                ('id', pick('id')),
                ('name', pick('name')),
                ('version', pick('version')),
                ('type', pick('type')),
                ('api_version', pick('api_version', 'apiVersion')),
                ('entry_point', pick('entry_point', 'entryPoint')),
            )
            if value is None
        ]
        if missing:
            raise PluginValidationError(
                f"Plugin manifest missing required fields: {', '.join(missing)}"
            )

        return cls(
            id=str(pick('id')),
            name=str(pick('name')),
            version=str(pick('version')),
            type=str(pick('type')),
            api_version=str(pick('api_version', 'apiVersion')),
            entry_point=str(pick('entry_point', 'entryPoint')),
            description=pick('description'),
            author=pick('author'),
            is_premium=bool(pick('is_premium', 'isPremium', default=False)),
            requires_license=bool(pick('requires_license', 'requiresLicense', default=False)),
            dependencies=dict(pick('dependencies', default={}) or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'version': self.version,
            'type': self.type,
            'apiVersion': self.api_version,
            'entryPoint': self.entry_point,
            'description': self.description,
            'author': self.author,
            'isPremium': self.is_premium,
            'requiresLicense': self.requires_license,
            'dependencies': dict(self.dependencies),
        }


@dataclass
class Plugin:
    """A loaded plugin: manifest plus capability object."""
    manifest: PluginManifest
    capability: Any

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def type(self) -> str:
        return self.manifest.type
