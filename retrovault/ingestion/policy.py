"""Batch admission policy."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from ..config.platforms import PlatformTable

DEFAULT_MAX_BATCH_SIZE = 100
DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MiB
ARCHIVE_EXTENSIONS = ['.zip']


@dataclass
class BatchPolicy:
    """Limits a batch must satisfy before any job is created."""
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_extensions: Optional[List[str]] = None   # Lower-case, leading dot; None allows any

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        platforms: Optional[PlatformTable] = None,
    ) -> 'BatchPolicy':
        """
        Build policy from the 'batch' config section.

        When no extensions are configured, every platform extension plus
        '.zip' is allowed.
        """
        batch = config.get('batch', {}) or {}

        extensions = batch.get('allowed_extensions')
        if extensions is None and platforms is not None:
            extensions = platforms.all_extensions() + ARCHIVE_EXTENSIONS

        return cls(
            max_batch_size=batch.get('max_batch_size', DEFAULT_MAX_BATCH_SIZE),
            max_file_size=batch.get('max_file_size', DEFAULT_MAX_FILE_SIZE),
            allowed_extensions=(
                [_normalize_extension(e) for e in extensions] if extensions is not None else None
            ),
        )


@dataclass
class AdmissionResult:
    valid: bool
    error: Optional[str] = None
    too_large: bool = False     # Rejected on batch size alone


def validate_batch(files: Iterable[Any], policy: BatchPolicy) -> AdmissionResult:
    """
    Check a batch against the policy, all or nothing.

    Args:
        files: Items with 'name' and 'size' (mappings or attributes)
        policy: Admission limits

    Returns:
        AdmissionResult; the first violation found is reported
    """
    files = list(files)

    if len(files) > policy.max_batch_size:
        return AdmissionResult(
            valid=False,
            error=f"Batch size exceeds maximum of {policy.max_batch_size} files",
            too_large=True,
        )

    allowed = None
    if policy.allowed_extensions is not None:
        allowed = {_normalize_extension(e) for e in policy.allowed_extensions}

    for item in files:
        name = _field(item, 'name') or ''
        size = _field(item, 'size') or 0

        if size > policy.max_file_size:
            return AdmissionResult(
                valid=False,
                error=f"File {name} exceeds maximum size of {policy.max_file_size} bytes",
            )

        if allowed is not None:
            extension = file_extension(name)
            if extension not in allowed:
                return AdmissionResult(
                    valid=False,
                    error=f"File {name} has invalid extension {extension or '(none)'}",
                )

    return AdmissionResult(valid=True)


def file_extension(name: str) -> str:
    """Text from the last '.', lower-cased; empty when there is no dot."""
    index = name.rfind('.')
    return name[index:].lower() if index != -1 else ''


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith('.') else '.' + ext


def _field(item: Any, key: str) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)
