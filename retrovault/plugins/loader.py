"""
Plugin loading from local files, installed packages, URLs and a marketplace.

Every source resolves to a Python module exposing:

    PLUGIN_MANIFEST = {'id': ..., 'type': ..., 'entryPoint': 'create_plugin', ...}

    def create_plugin():
        return MyCapability()

The loader reads the manifest, calls the entry-point factory and returns a
Plugin record. Registration (contract and compatibility checks) is left to
the PluginRegistry.
"""

import hashlib
import importlib
import importlib.util
import logging
import tempfile
import types
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from .manifest import Plugin, PluginError, PluginLicense, PluginManifest, PluginValidationError
from .registry import PluginRegistry

logger = logging.getLogger(__name__)


class PluginLoadError(PluginError):
    """Plugin could not be loaded from its source."""
    pass


class PluginNotFoundError(PluginLoadError):
    """Source does not exist (missing file, package or marketplace entry)."""
    pass


class PluginFetchError(PluginLoadError):
    """Network fetch of a remote plugin failed."""
    pass


class PluginIntegrityError(PluginLoadError):
    """Downloaded plugin does not match its published checksum."""
    pass


class PluginLicenseError(PluginLoadError):
    """Plugin requires a license that is missing, invalid or expired."""
    pass


class InvalidPluginModuleError(PluginLoadError):
    """Module does not expose a usable PLUGIN_MANIFEST."""
    pass


class EntryPointNotFoundError(PluginLoadError):
    """Module lacks the factory named by the manifest's entry point."""
    pass


@dataclass(frozen=True)
class LocalSource:
    path: Path          # .py file or package directory with __init__.py


@dataclass(frozen=True)
class PackageSource:
    name: str           # Importable module name


@dataclass(frozen=True)
class RemoteSource:
    url: str
    sha256: Optional[str] = None


@dataclass(frozen=True)
class MarketplaceSource:
    plugin_id: str
    index_url: str
    license: Optional[PluginLicense] = None


PluginSource = Union[LocalSource, PackageSource, RemoteSource, MarketplaceSource]


class PluginLoader:
    """
    Resolves plugin sources into Plugin records.

    Example:
        loader = PluginLoader(registry)
        plugin = loader.load_and_register(LocalSource(Path('plugins/chd.py')))
    """

    def __init__(
        self,
        registry: Optional[PluginRegistry] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        cache_dir: Optional[Path] = None,
    ):
        """
        Initialize loader.

        Args:
            registry: Registry used by load_and_register()
            client: Optional httpx.Client for remote sources
            timeout: Request timeout in seconds for remote sources
            cache_dir: Where verified downloads are written before import
        """
        self.registry = registry
        self.client = client
        self.timeout = httpx.Timeout(connect=5.0, read=timeout, write=5.0, pool=5.0)
        self.cache_dir = Path(cache_dir) if cache_dir else Path(tempfile.gettempdir()) / 'retrovault-plugins'

    def load(self, source: PluginSource) -> Plugin:
        """
        Load a plugin from any source.

        Raises:
            PluginLoadError: (or a subclass) if the source cannot be resolved
        """
        if isinstance(source, LocalSource):
            return self._load_local(source)
        if isinstance(source, PackageSource):
            return self._load_package(source)
        if isinstance(source, RemoteSource):
            return self._load_remote(source)
        if isinstance(source, MarketplaceSource):
            return self._load_marketplace(source)
        raise PluginLoadError(f"Unsupported plugin source: {source!r}")

    def load_and_register(self, source: PluginSource) -> Plugin:
        """Load a plugin and register it with the loader's registry."""
        if self.registry is None:
            raise PluginLoadError("No registry configured for plugin registration")
        plugin = self.load(source)
        self.registry.register(plugin)
        return plugin

    def load_from_config(self, sources: List[Dict[str, Any]]) -> List[Plugin]:
        """
        Load and register every source listed in the plugins config section.

        A source that fails to load is logged and skipped so one broken
        plugin does not disable the rest.
        """
        plugins = []
        for entry in sources or []:
            try:
                plugins.append(self.load_and_register(source_from_config(entry)))
            except PluginError as e:
                logger.error(f"Failed to load plugin from {entry}: {e}")
        return plugins

    def _load_local(self, source: LocalSource) -> Plugin:
        path = Path(source.path).expanduser()
        if path.is_dir():
            path = path / '__init__.py'
        if not path.is_file():
            raise PluginNotFoundError(f"Plugin file not found: {source.path}")

        module_name = f"retrovault_plugin_{path.parent.name if path.name == '__init__.py' else path.stem}"
        return _build_plugin(_import_file(path, module_name, str(path)), str(path))

    def _load_package(self, source: PackageSource) -> Plugin:
        try:
            module = importlib.import_module(source.name)
        except ModuleNotFoundError as e:
            raise PluginNotFoundError(f"Plugin package not installed: {source.name}") from e
        except Exception as e:
            raise PluginLoadError(f"Plugin package {source.name} failed to import: {e}") from e

        return _build_plugin(module, source.name)

    def _load_remote(self, source: RemoteSource) -> Plugin:
        code = self._fetch(source.url).content
        if source.sha256:
            _verify_checksum(code, source.sha256, source.url)
        return _build_plugin(self._import_download(code, source.url), source.url)

    def _load_marketplace(self, source: MarketplaceSource) -> Plugin:
        index_url = source.index_url.rstrip('/')
        response = self._fetch(f"{index_url}/plugins/{source.plugin_id}")

        try:
            listing = response.json()
            manifest = PluginManifest.from_dict(listing['manifest'])
            download_url = listing['download_url']
        except (ValueError, KeyError, TypeError, PluginValidationError) as e:
            raise PluginLoadError(
                f"Malformed marketplace listing for {source.plugin_id}: {e}"
            ) from e

        if manifest.requires_license or manifest.is_premium:
            if source.license is None:
                raise PluginLicenseError(f"Plugin {source.plugin_id} requires a license")
            if not source.license.is_valid():
                raise PluginLicenseError(
                    f"License for {source.plugin_id} is invalid or expired"
                )

        code = self._fetch(download_url).content
        checksum = listing.get('sha256')
        if checksum:
            _verify_checksum(code, checksum, download_url)

        plugin = _build_plugin(self._import_download(code, download_url), download_url)
        if plugin.id != source.plugin_id:
            raise InvalidPluginModuleError(
                f"Marketplace download for {source.plugin_id} declares id {plugin.id}"
            )
        return plugin

    def _import_download(self, code: bytes, origin: str) -> types.ModuleType:
        """Write downloaded plugin source to the cache and import it from there."""
        # One module file per distinct download
        module_name = 'retrovault_plugin_' + hashlib.sha256(code).hexdigest()[:16]
        path = self.cache_dir / f"{module_name}.py"
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(code)
        except OSError as e:
            raise PluginLoadError(f"Cannot cache plugin from {origin}: {e}") from e

        logger.debug(f"Cached plugin from {origin} at {path}")
        return _import_file(path, module_name, origin)

    def _fetch(self, url: str) -> httpx.Response:
        """GET a URL, mapping transport and status failures to load errors."""
        try:
            if self.client is not None:
                response = self.client.get(url, timeout=self.timeout)
            else:
                with httpx.Client(follow_redirects=True) as client:
                    response = client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise PluginFetchError(f"Timed out fetching {url}") from e
        except httpx.HTTPError as e:
            raise PluginFetchError(f"Network error fetching {url}: {e}") from e

        if response.status_code == 404:
            raise PluginNotFoundError(f"Plugin not found at {url}")
        if response.status_code != 200:
            raise PluginFetchError(f"HTTP {response.status_code} fetching {url}")

        logger.debug(f"Fetched plugin resource {url} ({len(response.content)} bytes)")
        return response


def source_from_config(entry: Dict[str, Any]) -> PluginSource:
    """
    Build a PluginSource from a plugins.sources config entry.

    Raises:
        PluginLoadError: If the entry's type is unknown or keys are missing
    """
    source_type = entry.get('type')
    try:
        if source_type == 'local':
            return LocalSource(Path(entry['path']))
        if source_type == 'package':
            return PackageSource(entry['name'])
        if source_type == 'remote':
            return RemoteSource(entry['url'], sha256=entry.get('sha256'))
        if source_type == 'marketplace':
            license_data = entry.get('license')
            plugin_license = None
            if license_data:
                plugin_license = PluginLicense(
                    key=license_data.get('key', ''),
                    type=license_data.get('type', 'subscription'),
                    expires_at=license_data.get('expires_at'),
                    features=list(license_data.get('features', [])),
                )
            return MarketplaceSource(entry['id'], entry['index_url'], license=plugin_license)
    except KeyError as e:
        raise PluginLoadError(f"Plugin source '{source_type}' missing key {e}") from e

    raise PluginLoadError(f"Unknown plugin source type: {source_type}")


def _import_file(path: Path, module_name: str, origin: str) -> types.ModuleType:
    """Import a plugin source file as a fresh module."""
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise InvalidPluginModuleError(f"Cannot import plugin from {origin}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise PluginLoadError(f"Plugin module {origin} failed to import: {e}") from e
    return module


def _verify_checksum(code: bytes, expected: str, origin: str) -> None:
    actual = hashlib.sha256(code).hexdigest()
    if actual != expected.lower():
        raise PluginIntegrityError(
            f"Checksum mismatch for {origin}: expected {expected}, got {actual}"
        )


def _build_plugin(module: types.ModuleType, origin: str) -> Plugin:
    """Read PLUGIN_MANIFEST, call the entry-point factory, return the record."""
    manifest_data = getattr(module, 'PLUGIN_MANIFEST', None)
    if not isinstance(manifest_data, dict):
        raise InvalidPluginModuleError(f"{origin} does not define a PLUGIN_MANIFEST dict")

    try:
        manifest = PluginManifest.from_dict(manifest_data)
    except PluginValidationError as e:
        raise InvalidPluginModuleError(f"{origin}: {e}") from e

    factory = getattr(module, manifest.entry_point, None)
    if not callable(factory):
        raise EntryPointNotFoundError(
            f"{origin} has no entry point '{manifest.entry_point}'"
        )

    try:
        capability = factory()
    except Exception as e:
        raise PluginLoadError(f"Entry point of {manifest.id} failed: {e}") from e

    logger.debug(f"Loaded plugin {manifest.id} from {origin}")
    return Plugin(manifest=manifest, capability=capability)
