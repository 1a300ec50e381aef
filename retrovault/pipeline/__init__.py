"""
ROM ingestion pipeline for retrovault.

Classifies, validates, normalizes, archives and promotes individual ROM
files.
"""

from .types import ROMFile, PhaseResult, ManifestEntry, PlaylistEntry, Stage
from .classifier import Classifier
from .validator import Validator
from .normalizer import Normalizer
from .archiver import Archiver
from .promoter import Promoter
from .manifest import ManifestStore, ManifestError, DuplicateEntryError
from .playlist import PlaylistStore
from .orchestrator import PipelineOrchestrator, PipelineResult

__all__ = [
    'ROMFile',
    'PhaseResult',
    'ManifestEntry',
    'PlaylistEntry',
    'Stage',
    'Classifier',
    'Validator',
    'Normalizer',
    'Archiver',
    'Promoter',
    'ManifestStore',
    'ManifestError',
    'DuplicateEntryError',
    'PlaylistStore',
    'PipelineOrchestrator',
    'PipelineResult',
]
