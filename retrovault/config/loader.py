"""Configuration loading and parsing."""

import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional


class ConfigError(Exception):
    """Configuration-related errors."""
    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    'paths': {
        'archive': './RetroArch-Archive',
        'sync': './RetroArch-Sync',
        'thumbnails': './RetroArch-Thumbnails',
        'workspace': './RetroArch-Workspace',
        'artwork': None,
        'platforms': None,
    },
    'pipeline': {
        'enable_classifier': True,
        'enable_validator': True,
        'enable_normalizer': True,
        'enable_archiver': True,
        'enable_promoter': True,
        'enable_chd_conversion': False,
        'enable_thumbnails': False,
        'stage_to_validation': False,
        'link_promoted': True,
        'hash_algorithm': 'sha256',
    },
    'batch': {
        'max_batch_size': 100,
        'max_file_size': 50 * 1024 * 1024,
        'allowed_extensions': None,  # None = every platform extension plus .zip
        'continue_on_error': True,
        'workers': 1,
        'job_retention_hours': 24,
    },
    'plugins': {
        'enabled': False,
        'execution_timeout': None,
        'sources': [],
    },
    'logging': {
        'level': 'INFO',
        'console': True,
        'file': None,
    },
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and parse configuration file.

    Values missing from the file are filled in from DEFAULT_CONFIG, so a
    config.yaml only has to list what differs from the defaults.

    Args:
        config_path: Path to config.yaml file. If None, searches current directory.

    Returns:
        Parsed configuration dictionary

    Raises:
        ConfigError: If config file cannot be loaded or parsed
    """
    # Determine config file path
    if config_path is None:
        config_path = Path.cwd() / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}\n"
            f"Copy config.yaml.example to config.yaml and configure it."
        )

    # Load YAML
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")
    except Exception as e:
        raise ConfigError(f"Failed to read config file: {e}")

    # An empty file is a valid "all defaults" configuration
    if config is None:
        config = {}

    if not isinstance(config, dict):
        raise ConfigError("Configuration file must contain a YAML dictionary")

    return merge_defaults(config)


def merge_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill missing sections and keys from DEFAULT_CONFIG.

    Only one level of nesting is merged; user values always win.

    Args:
        config: User configuration dictionary

    Returns:
        New dictionary with defaults applied
    """
    merged = copy.deepcopy(DEFAULT_CONFIG)

    for section, values in config.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values

    return merged


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Get a nested configuration value using dot notation.

    Args:
        config: Configuration dictionary
        path: Dot-separated path (e.g., 'batch.max_batch_size')
        default: Default value if path not found

    Returns:
        Configuration value or default

    Example:
        >>> get_config_value(config, 'pipeline.hash_algorithm')
        'sha256'
    """
    keys = path.split('.')
    value = config

    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default

    return value
