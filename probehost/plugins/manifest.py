"""
Plugin manifest model for probehost.

A plugin bundle is a directory holding a ``plugin.json`` manifest, an entry
script and an icon. The manifest declares the plugin's identity and the
lines its probe is expected to report.

Manifest Format:
    {
      "schemaVersion": 1,
      "id": "battery",
      "name": "Battery",
      "version": "0.1.0",
      "entry": "plugin.js",
      "icon": "icon.svg",
      "brandColor": "#22c55e",
      "lines": [
        {"type": "progress", "label": "Charge", "scope": "overview", "primary": true}
      ]
    }

Example:
    from probehost.plugins.manifest import PluginManifest, normalize_primary_lines

    manifest = PluginManifest.model_validate_json(text)
    manifest, warnings = normalize_primary_lines(manifest)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

PROGRESS_LINE = "progress"


class ManifestLine(BaseModel):
    """A line a plugin declares it will report.

    ``primary`` is only meaningful for progress lines; see
    :func:`normalize_primary_lines`.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    line_type: str = Field(..., alias="type", description="text | progress | badge")
    label: str
    scope: str
    primary: bool = False


class PluginManifest(BaseModel):
    """Parsed ``plugin.json``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    schema_version: int = Field(..., alias="schemaVersion")
    id: str
    name: str
    version: str
    entry: str
    icon: str
    brand_color: str | None = Field(default=None, alias="brandColor")
    lines: list[ManifestLine] = Field(default_factory=list)

    @property
    def primary_progress_label(self) -> str | None:
        """Label of the primary progress line, if one is declared."""
        for line in self.lines:
            if line.primary and line.line_type == PROGRESS_LINE:
                return line.label
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire shape."""
        return self.model_dump(by_alias=True)


def normalize_primary_lines(
    manifest: PluginManifest,
) -> tuple[PluginManifest, list[str]]:
    """Demote invalid and duplicate primary flags.

    Lines are visited in declaration order. The first primary progress
    line keeps its flag; primaries on other line types and any later
    primary progress lines are cleared.

    Args:
        manifest: The parsed manifest.

    Returns:
        Tuple of (normalized manifest, warning messages). The input
        manifest is not modified.
    """
    warnings: list[str] = []
    lines: list[ManifestLine] = []
    seen_primary_progress = False

    for line in manifest.lines:
        if not line.primary:
            lines.append(line)
            continue

        if line.line_type != PROGRESS_LINE:
            warnings.append(
                f"plugin {manifest.id} line '{line.label}' marked primary but "
                f"type is '{line.line_type}'; ignoring primary"
            )
            lines.append(line.model_copy(update={"primary": False}))
            continue

        if seen_primary_progress:
            warnings.append(
                f"plugin {manifest.id} has multiple primary progress lines; "
                f"extra primary ignored '{line.label}'"
            )
            lines.append(line.model_copy(update={"primary": False}))
            continue

        seen_primary_progress = True
        lines.append(line)

    for message in warnings:
        logger.warning(message)

    if not warnings:
        return manifest, warnings
    return manifest.model_copy(update={"lines": lines}), warnings


@dataclass(frozen=True)
class LoadedPlugin:
    """A validated plugin ready to be probed.

    Attributes:
        manifest: The normalized manifest.
        plugin_dir: The plugin's root directory.
        entry_script: Full text of the entry script.
        icon_data_url: Self-contained ``data:`` URL for the icon.
    """

    manifest: PluginManifest
    plugin_dir: Path
    entry_script: str
    icon_data_url: str

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def name(self) -> str:
        return self.manifest.name

    def __repr__(self) -> str:
        return f"<LoadedPlugin id={self.id!r} version={self.manifest.version!r}>"
