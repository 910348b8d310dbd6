"""
Capability-scoped host API for sandboxed plugins.

A HostApi is built fresh for every probe call and is closed over one
plugin's id and data directory. It produces two things:

- a set of host callables, registered in the sandbox under private
  global names, and
- a bootstrap script that wraps those callables into the context object
  handed to ``probe(ctx)`` and then removes the raw globals.

Every host callable takes strings and returns a JSON envelope string:
``{"ok": true, "value": ...}`` or ``{"ok": false, "error": "..."}``. The
bootstrap turns failed envelopes into ``throw new Error(message)``, so a
plugin sees an ordinary catchable exception with a readable message.

Context object seen by plugins:
    ctx.nowIso
    ctx.app.{version, platform, appDataDir, pluginDataDir}
    ctx.host.log.{info, warn, error}(message)
    ctx.host.fs.{exists, readText, writeText}
    ctx.host.http.request({url, method, headers, bodyText, timeoutMs})
    ctx.host.keychain.readGenericPassword(service)
    ctx.host.sqlite.query(dbPath, sql)
"""

from __future__ import annotations

import json
import logging
import math
import re
import sqlite3
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

CTX_GLOBAL = "__probehost_ctx"
PLUGIN_GLOBAL = "__probehost_plugin"
HOST_PREFIX = "__probehost_host_"

PLUGINS_DATA_SUBDIR = "plugins_data"
DEFAULT_HTTP_TIMEOUT_MS = 10_000
KEYCHAIN_PLATFORM = "macos"

_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_INVALID_HEADER_VALUE_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")

_LOG_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class HostCallError(Exception):
    """A host capability failed; the message is shown to the plugin."""


def iso_now() -> str:
    """Current UTC time as an RFC 3339 timestamp."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def platform_name() -> str:
    """Host OS name in the form plugins expect (macos, linux, windows)."""
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def expand_path(path: str) -> str:
    """Expand a leading ``~`` or ``~/``; other paths are returned unchanged."""
    if path == "~":
        return str(Path.home())
    if path.startswith("~/"):
        return str(Path.home() / path[2:])
    return path


def plugin_data_dir(app_data_dir: str | Path, plugin_id: str) -> Path:
    """Per-plugin data directory under the app data root."""
    return Path(app_data_dir) / PLUGINS_DATA_SUBDIR / plugin_id


def _ok(value: Any) -> str:
    return json.dumps({"ok": True, "value": value})


def _fail(message: str) -> str:
    return json.dumps({"ok": False, "error": message})


def _json_value(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


_BOOTSTRAP_TEMPLATE = r"""
(function (info) {
  var g = globalThis;
  var P = "%(prefix)s";
  var raw = {};
  Object.keys(g).forEach(function (name) {
    if (name.indexOf(P) === 0) {
      raw[name.slice(P.length)] = g[name];
      delete g[name];
    }
  });

  function call(name, args) {
    var res = JSON.parse(raw[name].apply(null, args));
    if (!res.ok) throw new Error(res.error);
    return res.value;
  }

  function logAt(level) {
    return function (message) {
      try { raw.log(level, String(message)); } catch (e) {}
    };
  }

  var requestRaw = function (reqJson) {
    return call("http_request", [String(reqJson)]);
  };

  var host = {
    log: { info: logAt("info"), warn: logAt("warn"), error: logAt("error") },
    fs: {
      exists: function (path) { return call("fs_exists", [String(path)]); },
      readText: function (path) { return call("fs_read_text", [String(path)]); },
      writeText: function (path, content) {
        call("fs_write_text", [String(path), String(content)]);
      }
    },
    http: {
      _requestRaw: requestRaw,
      request: function (req) {
        req = req || {};
        var json = JSON.stringify({
          url: req.url,
          method: req.method || "GET",
          headers: req.headers || null,
          bodyText: req.bodyText || null,
          timeoutMs: req.timeoutMs || %(timeout)d
        });
        return JSON.parse(requestRaw(json));
      }
    },
    keychain: {
      readGenericPassword: function (service) {
        return call("keychain_read", [String(service)]);
      }
    },
    sqlite: {
      query: function (dbPath, sql) {
        return call("sqlite_query", [String(dbPath), String(sql)]);
      }
    }
  };

  g.%(ctx)s = { nowIso: info.nowIso, app: info.app, host: host };
})(%(info)s);
"""


class HostApi:
    """Builds the capability bundle for one plugin invocation.

    Attributes:
        plugin_id: Id of the plugin the capabilities are bound to.
        app_data_dir: Application data root.
        app_version: Host application version string.

    Example:
        api = HostApi("battery", app_data_dir, "1.0.0")
        sandbox.inject(api.callables())
        sandbox.eval(api.bootstrap_script())
    """

    def __init__(
        self,
        plugin_id: str,
        app_data_dir: str | Path,
        app_version: str,
        http_transport: httpx.BaseTransport | None = None,
        platform: str | None = None,
    ):
        self.plugin_id = plugin_id
        self.app_data_dir = Path(app_data_dir)
        self.app_version = app_version
        self._http_transport = http_transport
        self._platform = platform or platform_name()

    @property
    def platform(self) -> str:
        return self._platform

    def app_info(self) -> dict[str, str]:
        """Read-only app record; creates the plugin data directory on demand."""
        data_dir = plugin_data_dir(self.app_data_dir, self.plugin_id)
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[plugin:{self.plugin_id}] failed to create plugin data dir: {e}")
        return {
            "version": self.app_version,
            "platform": self._platform,
            "appDataDir": str(self.app_data_dir),
            "pluginDataDir": str(data_dir),
        }

    def bootstrap_script(self) -> str:
        """Script that assembles the probe context from the host callables."""
        info = {"nowIso": iso_now(), "app": self.app_info()}
        return _BOOTSTRAP_TEMPLATE % {
            "prefix": HOST_PREFIX,
            "ctx": CTX_GLOBAL,
            "timeout": DEFAULT_HTTP_TIMEOUT_MS,
            "info": json.dumps(info),
        }

    def callables(self) -> dict[str, Callable[..., str]]:
        """Host callables keyed by their private global name."""
        functions: dict[str, Callable[..., Any]] = {
            "fs_exists": self.fs_exists,
            "fs_read_text": self.fs_read_text,
            "fs_write_text": self.fs_write_text,
            "http_request": self.http_request,
            "keychain_read": self.keychain_read_generic_password,
            "sqlite_query": self.sqlite_query,
        }
        wrapped: dict[str, Callable[..., str]] = {
            HOST_PREFIX + name: self._envelope(name, func)
            for name, func in functions.items()
        }
        wrapped[HOST_PREFIX + "log"] = self._log
        return wrapped

    def _envelope(self, name: str, func: Callable[..., Any]) -> Callable[..., str]:
        def call(*args: Any) -> str:
            try:
                return _ok(func(*args))
            except HostCallError as e:
                return _fail(str(e))
            except Exception as e:
                logger.debug(
                    f"[plugin:{self.plugin_id}] host call {name} failed", exc_info=True
                )
                return _fail(str(e) or type(e).__name__)

        call.__name__ = name
        return call

    # ------------------------------------------------------------------
    # log
    # ------------------------------------------------------------------

    def _log(self, level: Any = "info", message: Any = "") -> str:
        try:
            logger.log(
                _LOG_LEVELS.get(str(level), logging.INFO),
                f"[plugin:{self.plugin_id}] {message}",
            )
        except Exception:
            logger.debug("plugin log sink failed", exc_info=True)
        return ""

    # ------------------------------------------------------------------
    # fs
    # ------------------------------------------------------------------

    def fs_exists(self, path: str) -> bool:
        return Path(expand_path(path)).exists()

    def fs_read_text(self, path: str) -> str:
        try:
            return Path(expand_path(path)).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise HostCallError(str(e)) from e

    def fs_write_text(self, path: str, content: str) -> None:
        try:
            Path(expand_path(path)).write_text(content, encoding="utf-8")
        except OSError as e:
            raise HostCallError(str(e)) from e

    # ------------------------------------------------------------------
    # http
    # ------------------------------------------------------------------

    def http_request(self, req_json: str) -> str:
        """Perform one blocking HTTP request described by a JSON string.

        Returns:
            JSON string ``{"status", "headers", "bodyText"}``.
        """
        try:
            req = json.loads(req_json)
        except json.JSONDecodeError as e:
            raise HostCallError(f"invalid request: {e}") from e
        if not isinstance(req, dict):
            raise HostCallError("invalid request: expected an object")

        url = req.get("url")
        if not isinstance(url, str) or not url:
            raise HostCallError("invalid request: missing url")

        method = req.get("method") or "GET"
        if not isinstance(method, str) or not _TOKEN_RE.match(method):
            raise HostCallError(f"invalid http method '{method}'")

        raw_headers = req.get("headers") or {}
        if not isinstance(raw_headers, dict):
            raise HostCallError("invalid request: headers must be an object")

        headers: dict[str, str] = {}
        for key, value in raw_headers.items():
            if not _TOKEN_RE.match(key):
                raise HostCallError(f"invalid header name '{key}'")
            if not isinstance(value, str) or _INVALID_HEADER_VALUE_RE.search(value):
                raise HostCallError(f"invalid header value for '{key}'")
            headers[key] = value

        body = req.get("bodyText")
        if body is not None and not isinstance(body, str):
            raise HostCallError("invalid request: bodyText must be a string")

        timeout_ms = req.get("timeoutMs") or DEFAULT_HTTP_TIMEOUT_MS
        if not isinstance(timeout_ms, (int, float)) or timeout_ms <= 0:
            raise HostCallError("invalid request: timeoutMs must be a positive number")

        try:
            with httpx.Client(
                timeout=timeout_ms / 1000,
                follow_redirects=False,
                transport=self._http_transport,
            ) as client:
                response = client.request(method, url, headers=headers, content=body)
                resp_headers = dict(response.headers.items())
                body_text = response.text
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise HostCallError(str(e) or type(e).__name__) from e

        return json.dumps({
            "status": response.status_code,
            "headers": resp_headers,
            "bodyText": body_text,
        })

    # ------------------------------------------------------------------
    # keychain
    # ------------------------------------------------------------------

    def keychain_read_generic_password(self, service: str) -> str:
        if self._platform != KEYCHAIN_PLATFORM:
            raise HostCallError("keychain API is only supported on macOS")
        try:
            result = subprocess.run(
                ["security", "find-generic-password", "-s", service, "-w"],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise HostCallError(f"keychain read failed: {e}") from e
        if result.returncode != 0:
            raise HostCallError(f"keychain item not found: {result.stderr.strip()}")
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # sqlite
    # ------------------------------------------------------------------

    def sqlite_query(self, db_path: str, sql: str) -> str:
        """Run one read-only query and return the rows as a JSON array."""
        if sql.lstrip().startswith("."):
            raise HostCallError("sqlite3 dot-commands are not allowed")

        uri = Path(expand_path(db_path)).absolute().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
            try:
                conn.execute("PRAGMA query_only = ON")
                cursor = conn.execute(sql)
                columns = [col[0] for col in cursor.description or ()]
                rows = [
                    {col: _json_value(value) for col, value in zip(columns, row)}
                    for row in cursor.fetchall()
                ]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise HostCallError(f"sqlite3 error: {e}") from e

        return json.dumps(rows)

    def __repr__(self) -> str:
        return f"<HostApi plugin={self.plugin_id!r} platform={self._platform!r}>"
