"""Shared fixtures for the probehost test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from probehost.plugins.manifest import LoadedPlugin, PluginManifest

ICON_SVG = b'<svg xmlns="http://www.w3.org/2000/svg"/>'

TEXT_PROBE = """
globalThis.__probehost_plugin = {
    probe: function (ctx) {
        return { lines: [{ type: "text", label: "Battery", value: "87%" }] };
    }
};
"""


def manifest_dict(plugin_id: str = "x", **overrides: Any) -> dict[str, Any]:
    data = {
        "schemaVersion": 1,
        "id": plugin_id,
        "name": plugin_id.capitalize(),
        "version": "0.0.1",
        "entry": "plugin.js",
        "icon": "icon.svg",
        "brandColor": None,
        "lines": [],
    }
    data.update(overrides)
    return data


@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def app_data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "app-data"
    path.mkdir()
    return path


@pytest.fixture
def make_plugin(plugins_dir: Path) -> Callable[..., Path]:
    """Write a plugin bundle under ``plugins_dir`` and return its directory."""

    def _make(
        plugin_id: str = "x",
        script: str = TEXT_PROBE,
        dir_name: str | None = None,
        icon: bool = True,
        **manifest_overrides: Any,
    ) -> Path:
        plugin_dir = plugins_dir / (dir_name or plugin_id)
        plugin_dir.mkdir(parents=True)
        manifest = manifest_dict(plugin_id, **manifest_overrides)
        (plugin_dir / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
        if script is not None:
            (plugin_dir / "plugin.js").write_text(script, encoding="utf-8")
        if icon:
            (plugin_dir / "icon.svg").write_bytes(ICON_SVG)
        return plugin_dir

    return _make


@pytest.fixture
def loaded_plugin() -> Callable[..., LoadedPlugin]:
    """Build a LoadedPlugin directly from script text."""

    def _build(script: str, plugin_id: str = "test", name: str = "Test", lines=None) -> LoadedPlugin:
        manifest = PluginManifest.model_validate(
            manifest_dict(plugin_id, name=name, version="0.0.0", lines=lines or [])
        )
        return LoadedPlugin(
            manifest=manifest,
            plugin_dir=Path("."),
            entry_script=script,
            icon_data_url="data:image/svg+xml;base64,",
        )

    return _build
