"""Plugin manifests, registry, loader and sandboxed execution."""

from .manifest import API_VERSION, Plugin, PluginManifest, PluginType
from .registry import PluginRegistry
from .sandbox import PluginSandbox

__all__ = [
    'API_VERSION',
    'Plugin',
    'PluginManifest',
    'PluginType',
    'PluginRegistry',
    'PluginSandbox',
]
