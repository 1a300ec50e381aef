"""ROM, phase result, manifest and playlist data structures."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar('T')


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


class Stage(Enum):
    """Stages a ROM moves through in the pipeline."""
    CLASSIFIED = "classified"
    VALIDATED = "validated"
    NORMALIZED = "normalized"
    ARCHIVED = "archived"
    PROMOTED = "promoted"
    FAILED = "failed"


@dataclass
class ROMFile:
    """
    Information about a ROM being ingested.

    This is the primary data structure passed through the pipeline. The
    classifier creates it; validation attaches the hash, normalization
    rewrites the filename and attaches metadata. Once archived the
    orchestrator only hands copies to later phases.
    """
    id: str
    filename: str                   # Filename (no directory)
    path: Path                      # Current location on disk
    extension: str                  # Lower-case, leading dot (e.g. '.nes')
    size: int                       # File size in bytes
    platform: Optional[str] = None  # Platform id (e.g. 'nes', 'psx')
    hash: Optional[str] = None      # Content hash (lower-case hex)
    metadata: Dict[str, Any] = field(default_factory=dict)
    archived: bool = False

    @property
    def stem(self) -> str:
        """Filename without extension."""
        return Path(self.filename).stem

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation."""
        return {
            'id': self.id,
            'filename': self.filename,
            'path': str(self.path),
            'platform': self.platform,
            'extension': self.extension,
            'size': self.size,
            'hash': self.hash,
            'metadata': dict(self.metadata),
        }


@dataclass
class PhaseResult(Generic[T]):
    """Result of a single pipeline phase operation."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Optional[T] = None, **metadata: Any) -> 'PhaseResult[T]':
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, data: Optional[T] = None, **metadata: Any) -> 'PhaseResult[T]':
        return cls(success=False, data=data, error=error, metadata=metadata)


@dataclass
class ManifestEntry:
    """One archived ROM in a platform manifest."""
    id: str
    filename: str
    platform: str
    hash: str
    size: int
    extension: str
    archived_at: str                # ISO-8601 timestamp
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'filename': self.filename,
            'platform': self.platform,
            'hash': self.hash,
            'size': self.size,
            'extension': self.extension,
            'archivedAt': self.archived_at,
        }
        if self.metadata is not None:
            data['metadata'] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManifestEntry':
        return cls(
            id=data['id'],
            filename=data['filename'],
            platform=data['platform'],
            hash=data['hash'],
            size=data['size'],
            extension=data['extension'],
            archived_at=data['archivedAt'],
            metadata=data.get('metadata'),
        )


@dataclass
class PlaylistEntry:
    """RetroArch playlist item, keyed by path."""
    path: str
    label: str
    core_path: str = "DETECT"
    core_name: str = "DETECT"
    crc32: str = "00000000|crc"
    db_name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            'path': self.path,
            'label': self.label,
            'core_path': self.core_path,
            'core_name': self.core_name,
            'crc32': self.crc32,
            'db_name': self.db_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlaylistEntry':
        return cls(
            path=data['path'],
            label=data.get('label', ''),
            core_path=data.get('core_path', 'DETECT'),
            core_name=data.get('core_name', 'DETECT'),
            crc32=data.get('crc32', '00000000|crc'),
            db_name=data.get('db_name', ''),
        )
