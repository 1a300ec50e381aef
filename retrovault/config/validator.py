"""Configuration validation."""

import logging
import re
from pathlib import Path
from typing import Dict, Any, List

logger = logging.getLogger(__name__)

VALID_HASH_ALGORITHMS = ['sha256', 'sha1', 'md5']
VALID_SOURCE_TYPES = ['local', 'package', 'remote', 'marketplace']


class ValidationError(Exception):
    """Configuration validation errors."""
    pass


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Args:
        config: Configuration dictionary from loader

    Raises:
        ValidationError: If configuration is invalid
    """
    errors = []

    # Validate paths section
    errors.extend(_validate_paths(config.get('paths', {})))

    # Validate pipeline section
    errors.extend(_validate_pipeline(config.get('pipeline', {})))

    # Validate batch section
    errors.extend(_validate_batch(config.get('batch', {})))

    # Validate plugins section
    errors.extend(_validate_plugins(config.get('plugins', {})))

    # Validate logging section
    errors.extend(_validate_logging(config.get('logging', {})))

    if errors:
        raise ValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )


def _validate_paths(section: Dict[str, Any]) -> List[str]:
    """Validate paths section."""
    errors = []

    if not isinstance(section, dict):
        return ["paths must be a mapping"]

    # Check required paths
    required_paths = ['archive', 'sync', 'thumbnails', 'workspace']
    for path_key in required_paths:
        if not section.get(path_key):
            errors.append(f"paths.{path_key} is required")
        elif not isinstance(section[path_key], str):
            errors.append(f"paths.{path_key} must be a string path")

    # Optional platform table must exist if given
    platforms = section.get('platforms')
    if platforms:
        path = Path(platforms).expanduser()
        if not path.exists():
            errors.append(f"paths.platforms file not found: {path}")
        elif not path.is_file():
            errors.append(f"paths.platforms must be a file: {path}")

    artwork = section.get('artwork')
    if artwork is not None and not isinstance(artwork, str):
        errors.append("paths.artwork must be a string path or null")

    return errors


def _validate_pipeline(section: Dict[str, Any]) -> List[str]:
    """Validate pipeline options section."""
    errors = []

    if not isinstance(section, dict):
        return ["pipeline must be a mapping"]

    flags = [
        'enable_classifier', 'enable_validator', 'enable_normalizer',
        'enable_archiver', 'enable_promoter', 'enable_chd_conversion',
        'enable_thumbnails', 'stage_to_validation', 'link_promoted',
    ]
    for flag in flags:
        if flag in section and not isinstance(section[flag], bool):
            errors.append(f"pipeline.{flag} must be a boolean")

    hash_algorithm = section.get('hash_algorithm', 'sha256')
    if hash_algorithm not in VALID_HASH_ALGORITHMS:
        errors.append(
            f"pipeline.hash_algorithm must be one of: {', '.join(VALID_HASH_ALGORITHMS)}"
        )

    return errors


def _validate_batch(section: Dict[str, Any]) -> List[str]:
    """Validate batch admission and processing section."""
    errors = []

    if not isinstance(section, dict):
        return ["batch must be a mapping"]

    max_batch_size = section.get('max_batch_size', 100)
    if not isinstance(max_batch_size, int) or isinstance(max_batch_size, bool) or max_batch_size < 1:
        errors.append("batch.max_batch_size must be a positive integer")

    max_file_size = section.get('max_file_size', 1)
    if not isinstance(max_file_size, int) or isinstance(max_file_size, bool) or max_file_size < 1:
        errors.append("batch.max_file_size must be a positive integer (bytes)")

    extensions = section.get('allowed_extensions')
    if extensions is not None:
        if not isinstance(extensions, list):
            errors.append("batch.allowed_extensions must be a list")
        else:
            for ext in extensions:
                if not isinstance(ext, str) or not re.match(r'^\.[A-Za-z0-9]+$', ext):
                    errors.append(
                        f"batch.allowed_extensions entry must look like '.nes': {ext!r}"
                    )

    if 'continue_on_error' in section and not isinstance(section['continue_on_error'], bool):
        errors.append("batch.continue_on_error must be a boolean")

    workers = section.get('workers', 1)
    if not isinstance(workers, int) or isinstance(workers, bool) or not (1 <= workers <= 8):
        errors.append("batch.workers must be between 1 and 8")

    retention = section.get('job_retention_hours', 24)
    if not isinstance(retention, (int, float)) or retention < 0:
        errors.append("batch.job_retention_hours must be non-negative")

    return errors


def _validate_plugins(section: Dict[str, Any]) -> List[str]:
    """Validate plugins section."""
    errors = []

    if not isinstance(section, dict):
        return ["plugins must be a mapping"]

    if 'enabled' in section and not isinstance(section['enabled'], bool):
        errors.append("plugins.enabled must be a boolean")

    timeout = section.get('execution_timeout')
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        errors.append("plugins.execution_timeout must be a positive number or null")

    sources = section.get('sources', [])
    if not isinstance(sources, list):
        errors.append("plugins.sources must be a list")
        return errors

    for index, source in enumerate(sources):
        if not isinstance(source, dict):
            errors.append(f"plugins.sources[{index}] must be a mapping")
            continue
        source_type = source.get('type')
        if source_type not in VALID_SOURCE_TYPES:
            errors.append(
                f"plugins.sources[{index}].type must be one of: {', '.join(VALID_SOURCE_TYPES)}"
            )
            continue
        required = {
            'local': 'path',
            'package': 'name',
            'remote': 'url',
            'marketplace': 'id',
        }[source_type]
        if not source.get(required):
            errors.append(f"plugins.sources[{index}].{required} is required")
        if source_type == 'marketplace' and not source.get('index_url'):
            errors.append(f"plugins.sources[{index}].index_url is required")

    return errors


def _validate_logging(section: Dict[str, Any]) -> List[str]:
    """Validate logging options section."""
    errors = []

    # Validate level
    level = section.get('level', 'INFO')
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR']
    if level not in valid_levels:
        errors.append(f"logging.level must be one of: {', '.join(valid_levels)}")

    # Validate console flag
    console = section.get('console', True)
    if not isinstance(console, bool):
        errors.append("logging.console must be a boolean")

    # Validate optional log file
    if 'file' in section and section['file'] is not None:
        if not isinstance(section['file'], str):
            errors.append("logging.file must be a string path or null")

    return errors
