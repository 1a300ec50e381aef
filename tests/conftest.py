"""
Shared pytest fixtures and utilities for the retrovault test suite.
"""

from pathlib import Path
from typing import Dict, Any, Callable

import pytest
import yaml

from retrovault.config.platforms import load_platform_table
from retrovault.config.settings import PipelineSettings


def nes_bytes(payload: bytes = b"") -> bytes:
    """Minimal iNES image: 16-byte header followed by payload."""
    return b"NES\x1a" + b"\x02\x01" + b"\x00" * 10 + payload


def merge_dicts(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into base (returns new dict)."""
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., PipelineSettings]:
    """
    Build PipelineSettings rooted in the temp directory.

    Usage:
        settings = make_settings(enable_thumbnails=True)
    """

    def _builder(**overrides) -> PipelineSettings:
        values = dict(
            archive_root=tmp_path / "archive",
            sync_root=tmp_path / "sync",
            thumbnails_root=tmp_path / "thumbnails",
            workspace_root=tmp_path / "workspace",
            platforms=load_platform_table(),
        )
        values.update(overrides)
        return PipelineSettings(**values)

    return _builder


@pytest.fixture
def settings(make_settings) -> PipelineSettings:
    return make_settings()


@pytest.fixture
def incoming(tmp_path: Path) -> Path:
    """Directory submitted files are written to."""
    path = tmp_path / "incoming"
    path.mkdir()
    return path


@pytest.fixture
def make_file(incoming: Path) -> Callable[[str, bytes], Path]:
    """Write a file into the incoming directory."""

    def _builder(name: str, content: bytes = b"") -> Path:
        path = incoming / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _builder


@pytest.fixture
def make_nes(make_file) -> Callable[[str, bytes], Path]:
    """Write a valid NES ROM; payload makes the content (and hash) distinct."""

    def _builder(name: str = "Game.nes", payload: bytes = b"payload") -> Path:
        return make_file(name, nes_bytes(payload))

    return _builder


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[[Dict[str, Any]], Path]:
    """
    Create a minimal config.yaml in a temp directory.

    Usage:
        path = make_config({"batch": {"workers": 2}})
    """

    def _builder(overrides: Dict[str, Any] | None = None) -> Path:
        base = {
            "paths": {
                "archive": str(tmp_path / "archive"),
                "sync": str(tmp_path / "sync"),
                "thumbnails": str(tmp_path / "thumbnails"),
                "workspace": str(tmp_path / "workspace"),
            },
            "logging": {"level": "INFO", "console": False},
        }
        if overrides:
            base = merge_dicts(base, overrides)

        cfg_path = tmp_path / "config.yaml"
        cfg_path.write_text(yaml.safe_dump(base))
        return cfg_path

    return _builder
