"""
Plugin discovery and loading for probehost.

This module scans a plugins directory for plugin bundles, validates each
bundle, and produces the ordered list of plugins the runtime can probe.

Plugin Discovery:
    Every immediate subdirectory of the plugins directory that contains a
    ``plugin.json`` is a candidate. A candidate becomes a LoadedPlugin only
    if all of the following hold:
    - the manifest parses and matches the schema
    - ``entry`` is a non-empty relative path
    - the canonical entry path stays inside the canonical plugin directory
      and names a regular file
    - the entry script and the icon are readable

    A candidate that fails any check is logged and skipped. Loading one bad
    plugin never prevents its siblings from loading.

Example:
    from probehost.plugins.loader import PluginLoader

    loader = PluginLoader("~/.local/share/probehost/plugins")
    for plugin in loader.load_all():
        print(f"Loaded: {plugin.id} v{plugin.manifest.version}")
"""

from __future__ import annotations

import base64
import json
import logging
import shutil
from pathlib import Path

from pydantic import ValidationError

from probehost.plugins.manifest import (
    LoadedPlugin,
    PluginManifest,
    normalize_primary_lines,
)

logger = logging.getLogger(__name__)

MANIFEST_FILE = "plugin.json"
PLUGINS_SUBDIR = "plugins"
BUNDLED_PLUGINS_DIR = Path(__file__).resolve().parent.parent / "resources" / "bundled_plugins"


class PluginLoadError(Exception):
    """Raised when a plugin fails to load.

    Attributes:
        plugin_name: Directory name of the plugin that failed.
        reason: Reason for the failure.
        original: Original exception if any.
    """

    def __init__(
        self,
        plugin_name: str,
        reason: str,
        original: Exception | None = None,
    ):
        self.plugin_name = plugin_name
        self.reason = reason
        self.original = original
        super().__init__(f"Failed to load plugin '{plugin_name}': {reason}")


def icon_data_url(icon_bytes: bytes) -> str:
    """Embed icon bytes as a base64 SVG data URL."""
    encoded = base64.b64encode(icon_bytes).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def load_single_plugin(plugin_dir: Path) -> LoadedPlugin:
    """Load and validate one plugin bundle.

    Args:
        plugin_dir: Path to the plugin directory.

    Returns:
        The validated plugin.

    Raises:
        PluginLoadError: If the bundle fails any validation rule.
    """
    plugin, _ = validate_plugin_dir(plugin_dir)
    return plugin


def validate_plugin_dir(plugin_dir: Path) -> tuple[LoadedPlugin, list[str]]:
    """Load one plugin bundle and report manifest normalization warnings.

    Raises:
        PluginLoadError: If the bundle fails any validation rule.
    """
    plugin_dir = Path(plugin_dir)
    name = plugin_dir.name
    manifest_path = plugin_dir / MANIFEST_FILE

    try:
        manifest_text = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PluginLoadError(name, f"cannot read {MANIFEST_FILE}: {e}", e) from e

    try:
        manifest = PluginManifest.model_validate(json.loads(manifest_text))
    except json.JSONDecodeError as e:
        raise PluginLoadError(name, f"invalid JSON in {MANIFEST_FILE}: {e}", e) from e
    except ValidationError as e:
        raise PluginLoadError(name, f"invalid manifest: {e}", e) from e

    manifest, warnings = normalize_primary_lines(manifest)

    if not manifest.entry.strip():
        raise PluginLoadError(name, "plugin entry field cannot be empty")
    if Path(manifest.entry).is_absolute():
        raise PluginLoadError(name, "plugin entry must be a relative path")

    entry_path = plugin_dir / manifest.entry
    try:
        canonical_plugin_dir = plugin_dir.resolve(strict=True)
        canonical_entry_path = entry_path.resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise PluginLoadError(name, f"cannot resolve entry path: {e}", e) from e

    if not canonical_entry_path.is_relative_to(canonical_plugin_dir):
        raise PluginLoadError(name, "plugin entry must remain within plugin directory")
    if not canonical_entry_path.is_file():
        raise PluginLoadError(name, "plugin entry must be a file")

    try:
        entry_script = canonical_entry_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PluginLoadError(name, f"cannot read entry script: {e}", e) from e

    try:
        icon_bytes = (plugin_dir / manifest.icon).read_bytes()
    except OSError as e:
        raise PluginLoadError(name, f"cannot read icon: {e}", e) from e

    plugin = LoadedPlugin(
        manifest=manifest,
        plugin_dir=plugin_dir,
        entry_script=entry_script,
        icon_data_url=icon_data_url(icon_bytes),
    )
    return plugin, warnings


def _has_manifest(item: Path) -> bool:
    """True if ``item`` is a directory holding a manifest; unreadable entries are skipped."""
    try:
        return item.is_dir() and (item / MANIFEST_FILE).exists()
    except OSError as e:
        logger.warning(f"Skipping unreadable plugin directory {item}: {e}")
        return False


def load_plugins_from_dir(plugins_dir: str | Path) -> list[LoadedPlugin]:
    """Load every valid plugin under a directory.

    Args:
        plugins_dir: Directory whose subdirectories are plugin bundles.

    Returns:
        Loaded plugins sorted by manifest id. Invalid or unreadable bundles
        are omitted.
    """
    plugins_dir = Path(plugins_dir)
    plugins: list[LoadedPlugin] = []

    try:
        entries = list(plugins_dir.iterdir())
    except OSError as e:
        logger.debug(f"Plugin directory not readable: {plugins_dir} ({e})")
        return plugins

    for item in entries:
        if not _has_manifest(item):
            continue
        try:
            plugins.append(load_single_plugin(item))
        except PluginLoadError as e:
            logger.warning(str(e))

    plugins.sort(key=lambda p: p.manifest.id)
    logger.info(f"Loaded {len(plugins)} plugin(s) from {plugins_dir}")
    return plugins


def install_bundled_plugins(
    bundled_dir: str | Path,
    plugins_dir: str | Path,
) -> list[str]:
    """Copy bundled plugins into the user plugins directory.

    Existing copies of bundled plugins are replaced so that bundled
    plugins always match the installed application. Other plugins in
    the target directory are left alone.

    Args:
        bundled_dir: Directory holding the bundled plugin bundles.
        plugins_dir: Target plugins directory (created if missing).

    Returns:
        Names of the plugin directories that were installed.
    """
    bundled_dir = Path(bundled_dir)
    plugins_dir = Path(plugins_dir)
    installed: list[str] = []

    try:
        sources = sorted(bundled_dir.iterdir())
    except OSError as e:
        logger.debug(f"No bundled plugins at {bundled_dir} ({e})")
        return installed

    plugins_dir.mkdir(parents=True, exist_ok=True)

    for source in sources:
        if not _has_manifest(source):
            continue
        target = plugins_dir / source.name
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            shutil.copytree(source, target)
            installed.append(source.name)
        except OSError as e:
            logger.warning(f"Failed to install bundled plugin {source.name}: {e}")

    logger.info(f"Installed {len(installed)} bundled plugin(s) into {plugins_dir}")
    return installed


def initialize_plugins(
    app_data_dir: str | Path,
    bundled_dir: str | Path | None = BUNDLED_PLUGINS_DIR,
) -> tuple[Path, list[LoadedPlugin]]:
    """Install bundled plugins and load the application's plugins.

    Args:
        app_data_dir: Application data directory.
        bundled_dir: Bundled plugins to install first, or None to skip.

    Returns:
        Tuple of (plugins directory, loaded plugins).
    """
    plugins_dir = Path(app_data_dir) / PLUGINS_SUBDIR
    if bundled_dir is not None:
        install_bundled_plugins(bundled_dir, plugins_dir)
    return plugins_dir, load_plugins_from_dir(plugins_dir)


class PluginLoader:
    """Discovers and loads plugins from one directory.

    PluginRegistry loads through this class; ``discover()`` lets callers
    compare the bundles on disk with the ones that passed validation.

    Example:
        loader = PluginLoader("./plugins")
        names = loader.discover()
        plugins = loader.load_all()
    """

    def __init__(self, plugins_dir: str | Path):
        self._plugins_dir = Path(plugins_dir).expanduser()

    @property
    def plugins_dir(self) -> Path:
        """Get the configured plugins directory."""
        return self._plugins_dir

    def discover(self) -> list[str]:
        """List directory names that carry a manifest, without validating them."""
        try:
            entries = list(self._plugins_dir.iterdir())
        except OSError as e:
            logger.debug(f"Plugin directory not readable: {self._plugins_dir} ({e})")
            return []
        return sorted(item.name for item in entries if _has_manifest(item))

    def load_all(self) -> list[LoadedPlugin]:
        """Load every valid plugin in the directory."""
        return load_plugins_from_dir(self._plugins_dir)

    def reload(self) -> list[LoadedPlugin]:
        """Re-read all bundles from disk."""
        logger.info(f"Reloading plugins from {self._plugins_dir}")
        return self.load_all()

    def __repr__(self) -> str:
        return f"<PluginLoader dir={str(self._plugins_dir)!r}>"
