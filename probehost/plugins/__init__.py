"""
Plugin engine for probehost.

Plugins are small bundles (a ``plugin.json`` manifest, an entry script and
an icon) whose script exposes a ``probe(ctx)`` function. The engine:

- PluginLoader / load_plugins_from_dir: discovers and validates bundles
- HostApi: builds the capability-scoped host functions a script may call
- SandboxContext: a fresh, isolated interpreter per probe call
- run_probe / run_all_probes: execute probes and normalize their output
- PluginRegistry: process-wide snapshot of the loaded plugins

Security:
    A plugin script can only reach the outside world through the host
    functions injected into its context (log, fs, http, keychain, sqlite).
    Its entry script must live inside its own plugin directory.

Example:
    from probehost.plugins import PluginRegistry

    registry = PluginRegistry(plugins_dir, app_data_dir, app_version="1.0.0")
    registry.reload()
    for output in registry.probe_all():
        print(output.to_dict())
"""

from probehost.plugins.manifest import (
    LoadedPlugin,
    ManifestLine,
    PluginManifest,
    normalize_primary_lines,
)
from probehost.plugins.loader import (
    PluginLoader,
    PluginLoadError,
    initialize_plugins,
    install_bundled_plugins,
    load_plugins_from_dir,
    load_single_plugin,
    validate_plugin_dir,
)
from probehost.plugins.host_api import (
    HostApi,
    HostCallError,
)
from probehost.plugins.sandbox import (
    SandboxContext,
    SandboxError,
    SandboxPolicy,
)
from probehost.plugins.runtime import (
    BadgeLine,
    LineParseError,
    MetricLine,
    PluginOutput,
    ProgressLine,
    TextLine,
    parse_lines,
    run_all_probes,
    run_probe,
)
from probehost.plugins.registry import (
    PluginMeta,
    PluginRegistry,
    PrimaryBar,
    primary_bars,
)

__all__ = [
    # Manifest
    "LoadedPlugin",
    "ManifestLine",
    "PluginManifest",
    "normalize_primary_lines",
    # Loader
    "PluginLoader",
    "PluginLoadError",
    "initialize_plugins",
    "install_bundled_plugins",
    "load_plugins_from_dir",
    "load_single_plugin",
    "validate_plugin_dir",
    # Host API
    "HostApi",
    "HostCallError",
    # Sandbox
    "SandboxContext",
    "SandboxError",
    "SandboxPolicy",
    # Runtime
    "BadgeLine",
    "LineParseError",
    "MetricLine",
    "PluginOutput",
    "ProgressLine",
    "TextLine",
    "parse_lines",
    "run_all_probes",
    "run_probe",
    # Registry
    "PluginMeta",
    "PluginRegistry",
    "PrimaryBar",
    "primary_bars",
]
