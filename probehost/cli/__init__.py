"""
probehost - Command Line Interface

Built with Typer for the command surface and Rich for output.

Usage:
    $ probehost --help
    $ probehost plugin list
    $ probehost plugin probe [IDS...]
    $ probehost plugin validate ./plugins/battery
    $ probehost plugin install-bundled

Sub-command Groups:
    plugin - Plugin loading and probing

For detailed help on any command:
    $ probehost <group> <command> --help
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from probehost import __version__
from probehost.config.settings import Settings

# Create main console for output
console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Create main application
app = typer.Typer(
    name="probehost",
    help="probehost - run sandboxed probe plugins",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
)

plugin_app = typer.Typer(
    name="plugin",
    help="Plugin loading and probing commands",
    no_args_is_help=True,
)

app.add_typer(plugin_app, name="plugin")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"probehost version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
    plugins_dir: Optional[Path] = typer.Option(
        None,
        "--plugins-dir",
        help="Directory holding plugin bundles.",
    ),
    app_data_dir: Optional[Path] = typer.Option(
        None,
        "--app-data-dir",
        help="Application data directory.",
    ),
) -> None:
    """
    probehost - run sandboxed probe plugins

    Loads plugin bundles, runs their probes in isolated script contexts
    and renders the lines they report.
    """
    overrides = {}
    if plugins_dir is not None:
        overrides["PLUGINS_DIR"] = plugins_dir
    if app_data_dir is not None:
        overrides["APP_DATA_DIR"] = app_data_dir
    settings = Settings(**overrides)

    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.LOG_LEVEL,
        format=LOG_FORMAT,
    )
    ctx.obj = settings


def _register_subcommands() -> None:
    """Register all subcommand modules."""
    from probehost.cli import plugins  # noqa: F401


_register_subcommands()

__all__ = [
    "app",
    "plugin_app",
    "console",
    "err_console",
]


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
