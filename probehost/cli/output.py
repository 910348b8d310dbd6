"""
probehost CLI - Rich Output Helpers

Rendering of plugin metadata and probe output for the terminal.

Functions:
    print_json     - Print formatted JSON
    print_error    - Print error message
    print_success  - Print success message
    print_warning  - Print warning message
    print_plugins  - Print the loaded plugins table
    print_output   - Print one probe output as a panel
"""

from __future__ import annotations

import json
import re
from typing import Any, Sequence

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from probehost.plugins.registry import PluginMeta
from probehost.plugins.runtime import BadgeLine, MetricLine, PluginOutput, ProgressLine, TextLine

console = Console()
err_console = Console(stderr=True)

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def print_json(data: Any) -> None:
    """Print data as JSON without Rich markup processing."""
    console.print_json(json.dumps(data))


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    console.print(f"[green]OK[/green] {escape(message)}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {escape(message)}")


def print_plugins(metas: Sequence[PluginMeta], versions: dict[str, str]) -> None:
    """Print the loaded plugins as a table."""
    table = Table(title="Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Lines", justify="right")
    table.add_column("Primary")

    for meta in metas:
        table.add_row(
            escape(meta.id),
            escape(meta.name),
            escape(versions.get(meta.id, "")),
            str(len(meta.lines)),
            escape(meta.primary_progress_label or "-"),
        )

    console.print(table)


def _style(color: str | None) -> str:
    return color if color and _HEX_COLOR_RE.match(color) else ""


def _line_row(line: MetricLine) -> tuple[Any, Any]:
    label = Text(line.label, style="bold")

    if isinstance(line, TextLine):
        return label, Text(line.value, style=_style(line.color))

    if isinstance(line, ProgressLine):
        if line.is_invalid:
            return label, Text("N/A", style="dim")
        unit = f" {line.unit}" if line.unit else ""
        bar = ProgressBar(
            total=line.max if line.max > 0 else 1,
            completed=max(line.value, 0) if line.max > 0 else 0,
            width=24,
            complete_style=_style(line.color) or "bar.complete",
        )
        return label, Group(bar, Text(f"{line.value:g}/{line.max:g}{unit}", style="dim"))

    if isinstance(line, BadgeLine):
        return label, Text(f" {line.text} ", style=f"reverse {_style(line.color)}".strip())

    return label, Text("")


def print_output(output: PluginOutput) -> None:
    """Print one plugin's probe output as a panel."""
    table = Table.grid(padding=(0, 2))
    table.add_column()
    table.add_column()
    for line in output.lines:
        table.add_row(*_line_row(line))

    border = "red" if output.is_error else "cyan"
    console.print(Panel(
        table,
        title=Text(output.display_name),
        subtitle=Text(output.provider_id),
        border_style=border,
    ))
