"""
Probe execution for probehost plugins.

run_probe() drives one plugin through a fixed sequence of steps, each in a
brand-new sandbox:

    1. create   - construct an isolated scripting context
    2. inject   - register host callables and build the probe context
    3. evaluate - run the plugin's entry script
    4. locate   - find the plugin object and its probe() function
    5. invoke   - call probe(ctx), settling a returned promise by draining
                  the context's job queue
    6. parse    - convert the returned ``lines`` into MetricLines

The first failing step ends the run. Every failure is turned into a
PluginOutput holding a single red "Error" badge, so run_probe() always
returns a well-formed result and never raises.

Example:
    from probehost.plugins.runtime import run_all_probes

    outputs = run_all_probes(plugins, app_data_dir, "1.0.0")
    for output in outputs:
        print(output.provider_id, [line.to_dict() for line in output.lines])
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence, Union

import httpx

from probehost.plugins.host_api import CTX_GLOBAL, PLUGIN_GLOBAL, HostApi
from probehost.plugins.manifest import LoadedPlugin
from probehost.plugins.sandbox import SandboxContext, SandboxError, SandboxPolicy

logger = logging.getLogger(__name__)

ERROR_LABEL = "Error"
ERROR_COLOR = "#ef4444"
GENERIC_FAILURE = "The plugin failed, try again or contact plugin author."

STATE_GLOBAL = "__probehost_probe_state"

_INVOKE_SCRIPT = """
(function () {
  var g = globalThis;
  var state = { settled: false, ok: false, value: undefined, error: null };
  g.%(state)s = state;

  function fail(e) {
    state.settled = true;
    state.error = (typeof e === "string") ? e : null;
  }
  function done(v) {
    state.settled = true;
    state.ok = true;
    state.value = v;
  }

  var result;
  try {
    result = g.%(plugin)s.probe(g.%(ctx)s);
  } catch (e) {
    fail(e);
    return;
  }
  if (result instanceof Promise) {
    result.then(done, fail);
  } else {
    done(result);
  }
})();
""" % {"state": STATE_GLOBAL, "plugin": PLUGIN_GLOBAL, "ctx": CTX_GLOBAL}


# ===========================================================================
# Output model
# ===========================================================================


@dataclass(frozen=True)
class TextLine:
    label: str
    value: str
    color: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "label": self.label, "value": self.value, "color": self.color}


@dataclass(frozen=True)
class ProgressLine:
    """A bar; value -1 with max 0 marks data the plugin reported badly."""

    label: str
    value: float
    max: float
    unit: str | None = None
    color: str | None = None

    @property
    def is_invalid(self) -> bool:
        return self.value == -1 and self.max == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "progress",
            "label": self.label,
            "value": self.value,
            "max": self.max,
            "unit": self.unit,
            "color": self.color,
        }


@dataclass(frozen=True)
class BadgeLine:
    label: str
    text: str
    color: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "badge", "label": self.label, "text": self.text, "color": self.color}


MetricLine = Union[TextLine, ProgressLine, BadgeLine]


@dataclass
class PluginOutput:
    """Result of one probe call.

    Attributes:
        provider_id: Plugin id.
        display_name: Plugin display name.
        lines: Reported lines; never empty.
        icon_url: The plugin's icon data URL.
    """

    provider_id: str
    display_name: str
    lines: list[MetricLine] = field(default_factory=list)
    icon_url: str = ""

    @property
    def is_error(self) -> bool:
        """True when the output is a single error badge."""
        return (
            len(self.lines) == 1
            and isinstance(self.lines[0], BadgeLine)
            and self.lines[0].label == ERROR_LABEL
            and self.lines[0].color == ERROR_COLOR
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerId": self.provider_id,
            "displayName": self.display_name,
            "lines": [line.to_dict() for line in self.lines],
            "iconUrl": self.icon_url,
        }


def error_line(message: str) -> BadgeLine:
    return BadgeLine(label=ERROR_LABEL, text=message, color=ERROR_COLOR)


def error_output(plugin: LoadedPlugin, message: str) -> PluginOutput:
    return PluginOutput(
        provider_id=plugin.manifest.id,
        display_name=plugin.manifest.name,
        lines=[error_line(message)],
        icon_url=plugin.icon_data_url,
    )


# ===========================================================================
# Line parsing
# ===========================================================================


class LineParseError(Exception):
    """The probe result's lines could not be parsed."""


def _str_or_default(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def parse_lines(result: Any) -> list[MetricLine]:
    """Parse the ``lines`` of a probe result.

    Args:
        result: The probe result decoded to Python (a dict).

    Returns:
        Parsed lines in order; may be empty.

    Raises:
        LineParseError: If ``lines`` is missing or not a list, an entry is
            not an object, or an entry has an unknown type.
    """
    lines = result.get("lines") if isinstance(result, dict) else None
    if not isinstance(lines, list):
        raise LineParseError("missing lines")

    out: list[MetricLine] = []
    for idx, line in enumerate(lines):
        if not isinstance(line, dict):
            raise LineParseError(f"invalid line at index {idx}")

        line_type = _str_or_default(line.get("type"))
        label = _str_or_default(line.get("label"))
        color = _str_or_none(line.get("color"))

        if line_type == "text":
            out.append(TextLine(label=label, value=_str_or_default(line.get("value")), color=color))
        elif line_type == "progress":
            value = _finite_number(line.get("value"))
            max_value = _finite_number(line.get("max"))
            if value is None or max_value is None:
                logger.error(
                    f"invalid progress values at index {idx} "
                    f"(value={line.get('value')!r}, max={line.get('max')!r})"
                )
                value, max_value = -1.0, 0.0
            out.append(ProgressLine(
                label=label,
                value=value,
                max=max_value,
                unit=_str_or_none(line.get("unit")),
                color=color,
            ))
        elif line_type == "badge":
            out.append(BadgeLine(label=label, text=_str_or_default(line.get("text")), color=color))
        else:
            raise LineParseError(f"unknown line type: {line_type}")

    return out


# ===========================================================================
# Probe execution
# ===========================================================================


class ProbeFailed(Exception):
    """A terminal probe step failed; the message is shown as the error badge."""


def _thrown_message(error: Any) -> str:
    if isinstance(error, str) and error.strip():
        return error.strip()
    return GENERIC_FAILURE


def _execute(
    plugin: LoadedPlugin,
    app_data_dir: Path,
    app_version: str,
    policy: SandboxPolicy | None,
    http_transport: httpx.BaseTransport | None,
) -> Any:
    """Run steps 1-5 and return the probe result as plain Python data."""
    try:
        sandbox = SandboxContext(policy)
    except SandboxError as e:
        logger.error(f"[plugin:{plugin.id}] {e}")
        raise ProbeFailed("runtime error") from e

    host_api = HostApi(plugin.id, app_data_dir, app_version, http_transport=http_transport)
    try:
        sandbox.inject(host_api.callables())
        sandbox.eval(host_api.bootstrap_script())
    except SandboxError as e:
        logger.error(f"[plugin:{plugin.id}] {e}")
        raise ProbeFailed("host api injection failed") from e

    try:
        sandbox.eval(plugin.entry_script)
    except SandboxError as e:
        logger.warning(f"[plugin:{plugin.id}] {e}")
        raise ProbeFailed("script eval failed") from e

    try:
        has_plugin = sandbox.eval(
            f"(function (p) {{ return p !== null && "
            f"(typeof p === 'object' || typeof p === 'function'); }})(globalThis.{PLUGIN_GLOBAL})"
        )
        has_probe = has_plugin and sandbox.eval(
            f"typeof globalThis.{PLUGIN_GLOBAL}.probe === 'function'"
        )
    except SandboxError as e:
        logger.warning(f"[plugin:{plugin.id}] {e}")
        has_plugin = has_probe = False
    if not has_plugin:
        raise ProbeFailed("missing plugin entry")
    if not has_probe:
        raise ProbeFailed("missing probe()")

    try:
        sandbox.eval(_INVOKE_SCRIPT)
        sandbox.drain()
        state = sandbox.eval_json(
            f"(function (s) {{ return {{ settled: s.settled, ok: s.ok, error: s.error, "
            f"isObject: typeof s.value === 'object' && s.value !== null }}; }})"
            f"(globalThis.{STATE_GLOBAL})"
        )
    except SandboxError as e:
        logger.warning(f"[plugin:{plugin.id}] {e}")
        raise ProbeFailed(GENERIC_FAILURE) from e

    if not state["settled"]:
        raise ProbeFailed("probe() returned unresolved promise")
    if not state["ok"]:
        raise ProbeFailed(_thrown_message(state["error"]))
    if not state["isObject"]:
        raise ProbeFailed("probe() returned non-object")

    try:
        lines = sandbox.eval_json(f"globalThis.{STATE_GLOBAL}.value.lines")
    except (SandboxError, ValueError) as e:
        logger.warning(f"[plugin:{plugin.id}] unreadable lines: {e}")
        lines = None
    return {"lines": lines}


def run_probe(
    plugin: LoadedPlugin,
    app_data_dir: str | Path,
    app_version: str,
    policy: SandboxPolicy | None = None,
    http_transport: httpx.BaseTransport | None = None,
) -> PluginOutput:
    """Run one plugin's probe in a fresh sandbox.

    Args:
        plugin: The plugin to probe.
        app_data_dir: Application data root.
        app_version: Host application version exposed to the plugin.
        policy: Sandbox resource limits.
        http_transport: Transport for ``host.http`` (tests inject a mock).

    Returns:
        The plugin's output, or a single error badge on failure.
    """
    try:
        result = _execute(plugin, Path(app_data_dir), app_version, policy, http_transport)
        lines = parse_lines(result)
    except (ProbeFailed, LineParseError) as e:
        return error_output(plugin, str(e))
    except Exception:
        logger.exception(f"[plugin:{plugin.id}] unexpected probe failure")
        return error_output(plugin, "runtime error")

    if not lines:
        lines = [error_line("no lines returned")]

    return PluginOutput(
        provider_id=plugin.manifest.id,
        display_name=plugin.manifest.name,
        lines=lines,
        icon_url=plugin.icon_data_url,
    )


def run_all_probes(
    plugins: Sequence[LoadedPlugin],
    app_data_dir: str | Path,
    app_version: str,
    max_workers: int | None = None,
    policy: SandboxPolicy | None = None,
    http_transport: httpx.BaseTransport | None = None,
) -> list[PluginOutput]:
    """Probe every plugin, returning outputs in input order.

    Each probe runs in its own sandbox on a worker thread.
    """
    if not plugins:
        return []

    workers = max_workers or min(4, len(plugins))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
        return list(executor.map(
            lambda plugin: run_probe(
                plugin, app_data_dir, app_version, policy=policy, http_transport=http_transport
            ),
            plugins,
        ))
