"""
Plugin registry for probehost.

The registry owns the process-wide list of loaded plugins. The list is an
immutable snapshot: reload() builds a new tuple off to the side and swaps
it in under a lock, so a probe batch that started before a reload keeps
running against the snapshot it was given.

Example:
    from probehost.plugins.registry import PluginRegistry

    registry = PluginRegistry(plugins_dir, app_data_dir, app_version="1.0.0")
    registry.reload()

    outputs = registry.probe_all()
    bars = primary_bars(registry.list_meta(), outputs)
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from probehost.plugins.loader import PluginLoader
from probehost.plugins.manifest import LoadedPlugin, ManifestLine
from probehost.plugins.runtime import PluginOutput, ProgressLine, run_all_probes
from probehost.plugins.sandbox import SandboxPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_BARS = 4


@dataclass(frozen=True)
class PluginMeta:
    """Presentation metadata for a loaded plugin.

    Attributes:
        id: Plugin id.
        name: Display name.
        icon_url: Icon data URL.
        brand_color: Optional brand color.
        lines: Lines the manifest declares.
        primary_progress_label: Label of the primary progress line, if any.
    """

    id: str
    name: str
    icon_url: str
    brand_color: str | None = None
    lines: tuple[ManifestLine, ...] = ()
    primary_progress_label: str | None = None

    @classmethod
    def from_plugin(cls, plugin: LoadedPlugin) -> "PluginMeta":
        return cls(
            id=plugin.manifest.id,
            name=plugin.manifest.name,
            icon_url=plugin.icon_data_url,
            brand_color=plugin.manifest.brand_color,
            lines=tuple(plugin.manifest.lines),
            primary_progress_label=plugin.manifest.primary_progress_label,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "iconUrl": self.icon_url,
            "brandColor": self.brand_color,
            "lines": [
                {"type": line.line_type, "label": line.label, "scope": line.scope}
                for line in self.lines
            ],
            "primaryProgressLabel": self.primary_progress_label,
        }


@dataclass(frozen=True)
class PrimaryBar:
    """Headline fraction for one plugin; ``fraction`` is None when unknown."""

    id: str
    fraction: float | None = None


def _clamp01(value: float) -> float:
    if not math.isfinite(value) or value < 0:
        return 0.0
    return min(value, 1.0)


def primary_bars(
    metas: Sequence[PluginMeta],
    outputs: Iterable[PluginOutput],
    max_bars: int = DEFAULT_MAX_BARS,
) -> list[PrimaryBar]:
    """Summarize each plugin's primary progress line as a 0-1 fraction.

    Plugins without a primary progress line are skipped. A plugin whose
    output lacks the line, or reports ``max <= 0``, gets ``fraction=None``.

    Args:
        metas: Plugin metadata in display order.
        outputs: Probe outputs, matched to plugins by id.
        max_bars: Maximum number of bars to return.

    Returns:
        At most ``max_bars`` bars, in ``metas`` order.
    """
    by_id = {output.provider_id: output for output in outputs}
    bars: list[PrimaryBar] = []

    for meta in metas:
        if len(bars) >= max_bars:
            break
        if not meta.primary_progress_label:
            continue

        fraction = None
        output = by_id.get(meta.id)
        if output is not None:
            for line in output.lines:
                if isinstance(line, ProgressLine) and line.label == meta.primary_progress_label:
                    if line.max > 0:
                        fraction = _clamp01(line.value / line.max)
                    break

        bars.append(PrimaryBar(id=meta.id, fraction=fraction))

    return bars


@dataclass
class RegistrySnapshot:
    """One immutable generation of the loaded plugin set."""

    plugins: tuple[LoadedPlugin, ...] = ()
    generation: int = 0
    by_id: dict[str, LoadedPlugin] = field(default_factory=dict)


class PluginRegistry:
    """Process-wide registry of loaded plugins.

    Attributes:
        loader: Loader for the plugins directory.
        plugins_dir: Directory plugins are loaded from.
        app_data_dir: Application data root passed to probes.
        app_version: Application version passed to probes.
    """

    def __init__(
        self,
        plugins_dir: str | Path,
        app_data_dir: str | Path,
        app_version: str,
        max_workers: int | None = None,
        policy: SandboxPolicy | None = None,
    ):
        self.loader = PluginLoader(plugins_dir)
        self.plugins_dir = self.loader.plugins_dir
        self.app_data_dir = Path(app_data_dir)
        self.app_version = app_version
        self._max_workers = max_workers
        self._policy = policy
        self._lock = threading.Lock()
        self._snapshot = RegistrySnapshot()

    def reload(self) -> tuple[LoadedPlugin, ...]:
        """Reload plugins from disk and swap in the new snapshot."""
        plugins = tuple(self.loader.load_all())
        with self._lock:
            self._snapshot = RegistrySnapshot(
                plugins=plugins,
                generation=self._snapshot.generation + 1,
                by_id={plugin.id: plugin for plugin in plugins},
            )
            generation = self._snapshot.generation
        logger.info(f"Registry generation {generation}: {len(plugins)} plugin(s)")
        return plugins

    def replace(self, plugins: Sequence[LoadedPlugin]) -> None:
        """Install an already-loaded plugin list as the current snapshot."""
        plugins = tuple(sorted(plugins, key=lambda p: p.id))
        with self._lock:
            self._snapshot = RegistrySnapshot(
                plugins=plugins,
                generation=self._snapshot.generation + 1,
                by_id={plugin.id: plugin for plugin in plugins},
            )

    @property
    def generation(self) -> int:
        with self._lock:
            return self._snapshot.generation

    def plugins(self) -> tuple[LoadedPlugin, ...]:
        """Current plugins, sorted by id."""
        with self._lock:
            return self._snapshot.plugins

    def get(self, plugin_id: str) -> LoadedPlugin | None:
        with self._lock:
            return self._snapshot.by_id.get(plugin_id)

    def list_meta(self) -> list[PluginMeta]:
        return [PluginMeta.from_plugin(plugin) for plugin in self.plugins()]

    def probe_all(self, plugin_ids: Iterable[str] | None = None) -> list[PluginOutput]:
        """Probe the selected plugins (all when ``plugin_ids`` is None).

        Unknown ids are ignored. Outputs follow registry order.
        """
        selected = self.plugins()
        if plugin_ids is not None:
            wanted = set(plugin_ids)
            unknown = wanted - {plugin.id for plugin in selected}
            if unknown:
                logger.warning(f"Ignoring unknown plugin ids: {sorted(unknown)}")
            selected = tuple(plugin for plugin in selected if plugin.id in wanted)

        return run_all_probes(
            selected,
            self.app_data_dir,
            self.app_version,
            max_workers=self._max_workers,
            policy=self._policy,
        )

    def __len__(self) -> int:
        return len(self.plugins())

    def __repr__(self) -> str:
        return (
            f"<PluginRegistry dir={str(self.plugins_dir)!r} "
            f"plugins={len(self)} generation={self.generation}>"
        )
