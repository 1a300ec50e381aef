import hashlib
import textwrap

import httpx
import pytest
import respx

from retrovault.plugins.loader import (
    EntryPointNotFoundError,
    InvalidPluginModuleError,
    LocalSource,
    MarketplaceSource,
    PackageSource,
    PluginFetchError,
    PluginIntegrityError,
    PluginLicenseError,
    PluginLoadError,
    PluginLoader,
    PluginNotFoundError,
    RemoteSource,
    source_from_config,
)
from retrovault.plugins.manifest import API_VERSION, PluginLicense
from retrovault.plugins.registry import PluginRegistry

INDEX = "https://plugins.example.test"


def plugin_source(plugin_id="chdman", premium=False, entry_point="create_plugin"):
    return textwrap.dedent(f'''
        PLUGIN_MANIFEST = {{
            "id": "{plugin_id}",
            "name": "CHD converter",
            "version": "1.0.0",
            "type": "chd-converter",
            "apiVersion": "{API_VERSION}",
            "entryPoint": "{entry_point}",
            "isPremium": {premium},
        }}


        class Converter:
            def convert(self, rom):
                return rom


        def create_plugin():
            return Converter()
    ''')


def listing(plugin_id="chdman", premium=False, sha256=None):
    data = {
        "manifest": {
            "id": plugin_id,
            "name": "CHD converter",
            "version": "1.0.0",
            "type": "chd-converter",
            "apiVersion": API_VERSION,
            "entryPoint": "create_plugin",
            "isPremium": premium,
        },
        "download_url": f"{INDEX}/download/{plugin_id}.py",
    }
    if sha256:
        data["sha256"] = sha256
    return data


@pytest.mark.unit
def test_load_local_file(tmp_path):
    path = tmp_path / "chdman.py"
    path.write_text(plugin_source())

    plugin = PluginLoader().load(LocalSource(path))

    assert plugin.id == "chdman"
    assert plugin.type == "chd-converter"
    assert callable(plugin.capability.convert)


@pytest.mark.unit
def test_load_local_package_dir(tmp_path):
    package = tmp_path / "chd_plugin"
    package.mkdir()
    (package / "__init__.py").write_text(plugin_source())

    plugin = PluginLoader().load(LocalSource(package))

    assert plugin.id == "chdman"


@pytest.mark.unit
def test_load_local_missing_file(tmp_path):
    with pytest.raises(PluginNotFoundError):
        PluginLoader().load(LocalSource(tmp_path / "nope.py"))


@pytest.mark.unit
def test_module_without_manifest_is_invalid(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("VALUE = 1\n")

    with pytest.raises(InvalidPluginModuleError):
        PluginLoader().load(LocalSource(path))


@pytest.mark.unit
def test_missing_entry_point(tmp_path):
    path = tmp_path / "chdman.py"
    path.write_text(plugin_source(entry_point="make_it"))

    with pytest.raises(EntryPointNotFoundError):
        PluginLoader().load(LocalSource(path))


@pytest.mark.unit
def test_module_import_error_is_load_error(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("raise RuntimeError('bad plugin')\n")

    with pytest.raises(PluginLoadError, match="bad plugin"):
        PluginLoader().load(LocalSource(path))


@pytest.mark.unit
def test_load_package(tmp_path, monkeypatch):
    (tmp_path / "rv_test_chd_plugin.py").write_text(plugin_source(plugin_id="pkg-chd"))
    monkeypatch.syspath_prepend(str(tmp_path))

    plugin = PluginLoader().load(PackageSource("rv_test_chd_plugin"))

    assert plugin.id == "pkg-chd"


@pytest.mark.unit
def test_load_missing_package():
    with pytest.raises(PluginNotFoundError):
        PluginLoader().load(PackageSource("rv_no_such_plugin_package"))


@pytest.mark.unit
def test_load_remote_with_checksum():
    code = plugin_source().encode()
    url = f"{INDEX}/raw/chdman.py"

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(url).respond(200, content=code)
        plugin = PluginLoader(client=client).load(
            RemoteSource(url, sha256=hashlib.sha256(code).hexdigest())
        )

    assert plugin.id == "chdman"


@pytest.mark.unit
def test_load_remote_checksum_mismatch():
    url = f"{INDEX}/raw/chdman.py"

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(url).respond(200, content=plugin_source().encode())
        with pytest.raises(PluginIntegrityError):
            PluginLoader(client=client).load(RemoteSource(url, sha256="0" * 64))


@pytest.mark.unit
@pytest.mark.parametrize("status,error", [(404, PluginNotFoundError), (500, PluginFetchError)])
def test_load_remote_http_errors(status, error):
    url = f"{INDEX}/raw/chdman.py"

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(url).respond(status)
        with pytest.raises(error):
            PluginLoader(client=client).load(RemoteSource(url))


@pytest.mark.unit
def test_load_remote_network_error():
    url = f"{INDEX}/raw/chdman.py"

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(url).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(PluginFetchError):
            PluginLoader(client=client).load(RemoteSource(url))


@pytest.mark.unit
def test_load_marketplace_free_plugin():
    code = plugin_source().encode()

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(f"{INDEX}/plugins/chdman").respond(
            200, json=listing(sha256=hashlib.sha256(code).hexdigest())
        )
        mock.get(f"{INDEX}/download/chdman.py").respond(200, content=code)
        plugin = PluginLoader(client=client).load(MarketplaceSource("chdman", INDEX + "/"))

    assert plugin.id == "chdman"


@pytest.mark.unit
def test_marketplace_premium_requires_license():
    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(f"{INDEX}/plugins/chdman").respond(200, json=listing(premium=True))
        with pytest.raises(PluginLicenseError, match="requires a license"):
            PluginLoader(client=client).load(MarketplaceSource("chdman", INDEX))


@pytest.mark.unit
def test_marketplace_expired_license_is_refused():
    expired = PluginLicense(key="k", type="subscription", expires_at="2001-01-01T00:00:00Z")

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(f"{INDEX}/plugins/chdman").respond(200, json=listing(premium=True))
        with pytest.raises(PluginLicenseError, match="invalid or expired"):
            PluginLoader(client=client).load(MarketplaceSource("chdman", INDEX, license=expired))


@pytest.mark.unit
def test_marketplace_premium_with_license():
    code = plugin_source(premium=True).encode()
    perpetual = PluginLicense(key="k", type="perpetual")

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(f"{INDEX}/plugins/chdman").respond(200, json=listing(premium=True))
        mock.get(f"{INDEX}/download/chdman.py").respond(200, content=code)
        plugin = PluginLoader(client=client).load(
            MarketplaceSource("chdman", INDEX, license=perpetual)
        )

    assert plugin.manifest.is_premium is True


@pytest.mark.unit
def test_marketplace_download_must_match_id():
    code = plugin_source(plugin_id="impostor").encode()

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(f"{INDEX}/plugins/chdman").respond(200, json=listing())
        mock.get(f"{INDEX}/download/chdman.py").respond(200, content=code)
        with pytest.raises(InvalidPluginModuleError):
            PluginLoader(client=client).load(MarketplaceSource("chdman", INDEX))


@pytest.mark.unit
def test_malformed_marketplace_listing():
    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(f"{INDEX}/plugins/chdman").respond(200, json={"manifest": {}})
        with pytest.raises(PluginLoadError, match="Malformed"):
            PluginLoader(client=client).load(MarketplaceSource("chdman", INDEX))


@pytest.mark.unit
def test_load_and_register(tmp_path):
    path = tmp_path / "chdman.py"
    path.write_text(plugin_source())
    registry = PluginRegistry()

    PluginLoader(registry).load_and_register(LocalSource(path))

    assert registry.get_active("chd-converter").id == "chdman"


@pytest.mark.unit
def test_load_from_config_skips_broken_sources(tmp_path):
    good = tmp_path / "chdman.py"
    good.write_text(plugin_source())
    registry = PluginRegistry()

    loaded = PluginLoader(registry).load_from_config([
        {"type": "local", "path": str(tmp_path / "missing.py")},
        {"type": "local", "path": str(good)},
        {"type": "ftp", "url": "ftp://example.test/x.py"},
    ])

    assert [p.id for p in loaded] == ["chdman"]
    assert [m.id for m in registry.list_plugins()] == ["chdman"]


@pytest.mark.unit
def test_source_from_config():
    source = source_from_config({
        "type": "marketplace",
        "id": "chdman",
        "index_url": INDEX,
        "license": {"key": "abc", "type": "perpetual"},
    })

    assert isinstance(source, MarketplaceSource)
    assert source.license.type == "perpetual"
    assert source_from_config({"type": "package", "name": "x"}) == PackageSource("x")

    with pytest.raises(PluginLoadError, match="missing key"):
        source_from_config({"type": "remote"})


@pytest.mark.unit
def test_remote_plugin_is_imported_from_cache_file(tmp_path):
    code = plugin_source().encode()
    url = f"{INDEX}/raw/chdman.py"

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(url).respond(200, content=code)
        plugin = PluginLoader(client=client, cache_dir=tmp_path / "cache").load(RemoteSource(url))

    cached = list((tmp_path / "cache").glob("retrovault_plugin_*.py"))
    assert len(cached) == 1
    assert cached[0].read_bytes() == code
    assert plugin.capability.convert.__code__.co_filename == str(cached[0])


@pytest.mark.unit
def test_remote_plugin_import_error(tmp_path):
    url = f"{INDEX}/raw/broken.py"

    with httpx.Client() as client, respx.mock(assert_all_called=True) as mock:
        mock.get(url).respond(200, content=b"raise RuntimeError('broken download')\n")
        with pytest.raises(PluginLoadError, match="failed to import: broken download"):
            PluginLoader(client=client, cache_dir=tmp_path).load(RemoteSource(url))
