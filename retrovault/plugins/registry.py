"""
Plugin registry.

Holds registered plugins in registration order. For each type the most
recently registered plugin is the active one, which is what the pipeline
substitutes for its built-in phase.
"""

import logging
import threading
from typing import Dict, List, Optional

from .manifest import (
    API_VERSION,
    PLUGIN_CONTRACTS,
    Plugin,
    PluginError,
    PluginManifest,
    PluginValidationError,
    parse_version,
)

logger = logging.getLogger(__name__)


class PluginCompatibilityError(PluginValidationError):
    """Plugin targets an API version the host cannot serve."""
    pass


class DuplicatePluginError(PluginValidationError):
    """A plugin with the same id is already registered."""
    pass


class PluginRegistry:
    """
    Registers, validates and looks up plugins.

    Example:
        registry = PluginRegistry()
        registry.register(plugin)
        converter = registry.get_active('chd-converter')
    """

    def __init__(self, api_version: str = API_VERSION):
        """
        Initialize registry.

        Args:
            api_version: Host plugin API version ('major.minor.patch')
        """
        self.api_version = api_version
        self._host_major, self._host_minor = parse_version(api_version)
        self._plugins: Dict[str, Plugin] = {}
        self._lock = threading.Lock()

    def register(self, plugin: Plugin) -> None:
        """
        Validate and register a plugin, then call its optional init().

        Args:
            plugin: Plugin record

        Raises:
            PluginValidationError: If the manifest or capability is invalid
            PluginCompatibilityError: If the API version is incompatible
            DuplicatePluginError: If the id is already registered
            PluginError: If the plugin's init() fails
        """
        self._validate(plugin)

        with self._lock:
            if plugin.id in self._plugins:
                raise DuplicatePluginError(f"Plugin already registered: {plugin.id}")

        init = getattr(plugin.capability, 'init', None)
        if callable(init):
            try:
                init()
            except Exception as e:
                raise PluginError(f"Plugin {plugin.id} failed to initialize: {e}") from e

        with self._lock:
            if plugin.id in self._plugins:
                raise DuplicatePluginError(f"Plugin already registered: {plugin.id}")
            self._plugins[plugin.id] = plugin

        logger.info(
            f"Registered plugin {plugin.id} v{plugin.manifest.version} ({plugin.type})"
        )

    def unregister(self, plugin_id: str) -> bool:
        """
        Remove a plugin and call its optional cleanup().

        Returns:
            True if the plugin was registered
        """
        with self._lock:
            plugin = self._plugins.pop(plugin_id, None)

        if plugin is None:
            return False

        cleanup = getattr(plugin.capability, 'cleanup', None)
        if callable(cleanup):
            try:
                cleanup()
            except Exception as e:
                logger.warning(f"Plugin {plugin_id} cleanup failed: {e}")

        logger.info(f"Unregistered plugin {plugin_id}")
        return True

    def check_compatibility(self, plugin: Plugin) -> bool:
        """
        Check a plugin's API version against the host.

        Compatible when the major versions are equal and the plugin's minor
        version is not newer than the host's.
        """
        try:
            major, minor = parse_version(plugin.manifest.api_version)
        except ValueError:
            return False
        return major == self._host_major and minor <= self._host_minor

    def get(self, plugin_id: str) -> Optional[Plugin]:
        with self._lock:
            return self._plugins.get(plugin_id)

    def get_by_type(self, plugin_type: str) -> List[Plugin]:
        """Plugins of a type in registration order."""
        plugin_type = _type_value(plugin_type)
        with self._lock:
            return [p for p in self._plugins.values() if p.type == plugin_type]

    def get_active(self, plugin_type: str) -> Optional[Plugin]:
        """Most recently registered plugin of a type, or None."""
        plugins = self.get_by_type(plugin_type)
        return plugins[-1] if plugins else None

    def list_plugins(self) -> List[PluginManifest]:
        with self._lock:
            return [p.manifest for p in self._plugins.values()]

    def validate_all(self) -> Dict[str, bool]:
        """
        Run each plugin's optional validate() hook.

        Returns:
            Mapping of plugin id to validation outcome; plugins without a
            hook count as valid
        """
        with self._lock:
            plugins = list(self._plugins.values())

        results = {}
        for plugin in plugins:
            validate = getattr(plugin.capability, 'validate', None)
            if not callable(validate):
                results[plugin.id] = True
                continue
            try:
                results[plugin.id] = validate() is not False
            except Exception as e:
                logger.warning(f"Plugin {plugin.id} failed validation: {e}")
                results[plugin.id] = False
        return results

    def _validate(self, plugin: Plugin) -> None:
        """Collect every manifest/capability problem and raise once."""
        if plugin is None or plugin.manifest is None:
            raise PluginValidationError("Plugin manifest is required")

        manifest = plugin.manifest
        errors = []

        for field_name in ('id', 'name', 'version'):
            value = getattr(manifest, field_name)
            if not value or not str(value).strip():
                errors.append(f"{field_name} must be non-empty")

        if manifest.type not in PLUGIN_CONTRACTS:
            errors.append(f"unknown plugin type: {manifest.type}")

        if plugin.capability is None:
            errors.append("capability is missing")
        elif manifest.type in PLUGIN_CONTRACTS:
            missing = [
                method for method in PLUGIN_CONTRACTS[manifest.type]
                if not callable(getattr(plugin.capability, method, None))
            ]
            if missing:
                errors.append(
                    f"capability does not implement {manifest.type} contract: "
                    f"missing {', '.join(missing)}"
                )

        if errors:
            raise PluginValidationError(
                f"Invalid plugin {manifest.id or '(no id)'}: " + "; ".join(errors)
            )

        if not self.check_compatibility(plugin):
            raise PluginCompatibilityError(
                f"Plugin {manifest.id} targets API {manifest.api_version}, "
                f"host provides {self.api_version}"
            )


def _type_value(plugin_type) -> str:
    return plugin_type.value if hasattr(plugin_type, 'value') else str(plugin_type)
