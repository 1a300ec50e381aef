from datetime import datetime, timezone

import pytest

from retrovault.plugins.manifest import (
    PLUGIN_CONTRACTS,
    PluginLicense,
    PluginManifest,
    PluginType,
    PluginValidationError,
    parse_version,
)


@pytest.mark.unit
def test_manifest_from_camel_case_dict():
    manifest = PluginManifest.from_dict({
        "id": "chdman",
        "name": "CHD converter",
        "version": "2.1.0",
        "type": "chd-converter",
        "apiVersion": "1.0.0",
        "entryPoint": "create_plugin",
        "isPremium": True,
        "dependencies": {"chdman": ">=0.250"},
    })

    assert manifest.api_version == "1.0.0"
    assert manifest.entry_point == "create_plugin"
    assert manifest.is_premium is True
    assert manifest.requires_license is False
    assert manifest.dependencies == {"chdman": ">=0.250"}


@pytest.mark.unit
def test_manifest_round_trips_through_camel_case():
    data = {
        "id": "p", "name": "P", "version": "1.0.0", "type": "classifier",
        "api_version": "1.2.0", "entry_point": "create_plugin",
    }

    manifest = PluginManifest.from_dict(data)

    assert PluginManifest.from_dict(manifest.to_dict()) == manifest
    assert manifest.to_dict()["apiVersion"] == "1.2.0"


@pytest.mark.unit
def test_manifest_missing_fields_are_listed():
    with pytest.raises(PluginValidationError, match="version, type"):
        PluginManifest.from_dict({"id": "p", "name": "P", "apiVersion": "1.0", "entryPoint": "f"})

    with pytest.raises(PluginValidationError):
        PluginManifest.from_dict(["not", "a", "dict"])


@pytest.mark.unit
@pytest.mark.parametrize("version,expected", [
    ("1.2.0", (1, 2)),
    ("3.0", (3, 0)),
    ("10.11.12", (10, 11)),
])
def test_parse_version(version, expected):
    assert parse_version(version) == expected


@pytest.mark.unit
@pytest.mark.parametrize("version", ["1", "1.x", "", "1.2.3.4", "v1.2"])
def test_parse_version_rejects_malformed(version):
    with pytest.raises(ValueError):
        parse_version(version)


@pytest.mark.unit
def test_every_plugin_type_has_a_contract():
    assert set(PLUGIN_CONTRACTS) == {t.value for t in PluginType}


@pytest.mark.unit
def test_license_validity():
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)

    assert PluginLicense(key="k", type="perpetual").is_valid(now)
    assert PluginLicense(key="k", type="subscription", expires_at="2025-12-31T00:00:00Z").is_valid(now)
    assert not PluginLicense(key="k", type="subscription", expires_at="2025-01-01T00:00:00Z").is_valid(now)
    assert not PluginLicense(key="k", type="subscription").is_valid(now)
    assert not PluginLicense(key="k", type="subscription", expires_at="someday").is_valid(now)
    assert not PluginLicense(key="", type="perpetual").is_valid(now)
    assert not PluginLicense(key="k", type="trial").is_valid(now)
