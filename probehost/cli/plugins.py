"""
probehost CLI - Plugin Commands

Commands:
    list            - List loaded plugins
    probe           - Run plugin probes and render their lines
    validate        - Validate one plugin directory
    install-bundled - Copy bundled plugins into the plugins directory
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from rich.markup import escape

from probehost.cli import console, plugin_app
from probehost.cli.output import (
    print_error,
    print_json,
    print_output,
    print_plugins,
    print_success,
    print_warning,
)
from probehost.config.settings import Settings
from probehost.plugins.loader import (
    BUNDLED_PLUGINS_DIR,
    PluginLoadError,
    install_bundled_plugins,
    validate_plugin_dir,
)
from probehost.plugins.registry import PluginRegistry, primary_bars
from probehost.plugins.sandbox import SandboxPolicy


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings()


def _registry(settings: Settings) -> PluginRegistry:
    plugins_dir = settings.resolved_plugins_dir()
    if settings.INSTALL_BUNDLED:
        install_bundled_plugins(BUNDLED_PLUGINS_DIR, plugins_dir)

    registry = PluginRegistry(
        plugins_dir,
        settings.APP_DATA_DIR,
        settings.APP_VERSION,
        max_workers=settings.MAX_WORKERS,
        policy=SandboxPolicy(memory_limit_mb=settings.SANDBOX_MEMORY_LIMIT_MB),
    )
    registry.reload()
    return registry


@plugin_app.command("list")
def list_plugins(
    ctx: typer.Context,
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Output plugin metadata as JSON.",
    ),
) -> None:
    """
    List loaded plugins.

    Only plugins that pass validation are shown; the reason for each
    rejected bundle is in the log.
    """
    registry = _registry(_settings(ctx))
    metas = registry.list_meta()

    if as_json:
        print_json([meta.to_dict() for meta in metas])
        return

    rejected = len(registry.loader.discover()) - len(metas)
    if rejected > 0:
        print_warning(f"{rejected} plugin bundle(s) failed validation")

    if not metas:
        print_warning(f"No plugins found in {registry.plugins_dir}")
        return

    versions = {plugin.id: plugin.manifest.version for plugin in registry.plugins()}
    print_plugins(metas, versions)


@plugin_app.command("probe")
def probe(
    ctx: typer.Context,
    plugin_ids: Optional[List[str]] = typer.Argument(
        None,
        help="Plugin ids to probe (default: all).",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Output probe results as JSON.",
    ),
) -> None:
    """
    Run plugin probes and render the lines they report.

    Probe failures are part of the output (an Error badge) and do not
    change the exit code.
    """
    registry = _registry(_settings(ctx))
    outputs = registry.probe_all(plugin_ids or None)

    if as_json:
        print_json([output.to_dict() for output in outputs])
        return

    if not outputs:
        print_warning("No plugins to probe")
        return

    for output in outputs:
        print_output(output)

    for bar in primary_bars(registry.list_meta(), outputs):
        shown = "N/A" if bar.fraction is None else f"{bar.fraction:.0%}"
        console.print(f"[dim]{escape(bar.id)}[/dim] {shown}")


@plugin_app.command("validate")
def validate(
    path: Path = typer.Argument(
        ...,
        help="Plugin directory to validate.",
    ),
) -> None:
    """
    Validate a plugin directory.

    Exits with status 1 if the plugin would be rejected by the loader.
    """
    try:
        plugin, warnings = validate_plugin_dir(path)
    except PluginLoadError as e:
        print_error(e.reason)
        raise typer.Exit(1)

    for message in warnings:
        print_warning(message)
    print_success(f"{plugin.id} v{plugin.manifest.version} is valid")


@plugin_app.command("install-bundled")
def install_bundled(ctx: typer.Context) -> None:
    """
    Copy bundled plugins into the plugins directory.

    Existing copies of bundled plugins are replaced.
    """
    plugins_dir = _settings(ctx).resolved_plugins_dir()
    installed = install_bundled_plugins(BUNDLED_PLUGINS_DIR, plugins_dir)
    if not installed:
        print_warning("No bundled plugins installed")
        return
    print_success(f"Installed {', '.join(installed)} into {plugins_dir}")
