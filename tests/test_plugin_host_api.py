"""Tests for probehost.plugins.host_api - capability-scoped host functions."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

import httpx
import pytest

from probehost.plugins.host_api import (
    CTX_GLOBAL,
    HOST_PREFIX,
    HostApi,
    HostCallError,
    expand_path,
    iso_now,
    platform_name,
    plugin_data_dir,
)


def _api(app_data_dir, **kwargs) -> HostApi:
    return HostApi("battery", app_data_dir, "1.2.3", **kwargs)


def _call(api: HostApi, name: str, *args: str) -> dict:
    return json.loads(api.callables()[HOST_PREFIX + name](*args))


# ===========================================================================
# Helpers
# ===========================================================================


class TestHelpers:
    """Tests for module-level helpers."""

    def test_expand_tilde_alone(self):
        assert expand_path("~") == str(Path.home())

    def test_expand_tilde_slash(self):
        assert expand_path("~/.config/x.json") == str(Path.home() / ".config/x.json")

    def test_other_paths_untouched(self):
        assert expand_path("/etc/hosts") == "/etc/hosts"
        assert expand_path("~user/file") == "~user/file"
        assert expand_path("relative/~/x") == "relative/~/x"

    def test_iso_now_is_utc(self):
        value = iso_now()
        assert value.endswith("Z")
        assert "T" in value

    def test_platform_name(self, monkeypatch):
        monkeypatch.setattr("sys.platform", "darwin")
        assert platform_name() == "macos"
        monkeypatch.setattr("sys.platform", "win32")
        assert platform_name() == "windows"
        monkeypatch.setattr("sys.platform", "linux")
        assert platform_name() == "linux"

    def test_plugin_data_dir_layout(self, tmp_path):
        assert plugin_data_dir(tmp_path, "battery") == tmp_path / "plugins_data" / "battery"


# ===========================================================================
# app info and bootstrap
# ===========================================================================


class TestAppInfo:
    """Tests for the app record exposed to plugins."""

    def test_app_info_fields(self, app_data_dir):
        info = _api(app_data_dir, platform="linux").app_info()
        assert info == {
            "version": "1.2.3",
            "platform": "linux",
            "appDataDir": str(app_data_dir),
            "pluginDataDir": str(app_data_dir / "plugins_data" / "battery"),
        }

    def test_plugin_data_dir_created(self, app_data_dir):
        _api(app_data_dir).app_info()
        assert (app_data_dir / "plugins_data" / "battery").is_dir()

    def test_data_dir_creation_failure_not_fatal(self, tmp_path, caplog):
        blocker = tmp_path / "file-not-dir"
        blocker.write_text("x")
        with caplog.at_level(logging.WARNING, logger="probehost.plugins.host_api"):
            info = _api(blocker).app_info()
        assert info["pluginDataDir"] == str(blocker / "plugins_data" / "battery")
        assert "failed to create plugin data dir" in caplog.text

    def test_bootstrap_sets_context_global(self, app_data_dir):
        script = _api(app_data_dir).bootstrap_script()
        assert f"g.{CTX_GLOBAL} =" in script
        assert '"pluginDataDir"' in script

    def test_callables_are_prefixed(self, app_data_dir):
        names = set(_api(app_data_dir).callables())
        assert names == {
            HOST_PREFIX + suffix
            for suffix in (
                "log",
                "fs_exists",
                "fs_read_text",
                "fs_write_text",
                "http_request",
                "keychain_read",
                "sqlite_query",
            )
        }


# ===========================================================================
# log
# ===========================================================================


class TestLog:
    """Tests for host.log."""

    def test_log_levels_tagged_with_plugin_id(self, app_data_dir, caplog):
        log = _api(app_data_dir).callables()[HOST_PREFIX + "log"]
        with caplog.at_level(logging.INFO, logger="probehost.plugins.host_api"):
            log("info", "hello")
            log("warn", "careful")
            log("error", "broken")

        records = [(r.levelno, r.getMessage()) for r in caplog.records]
        assert (logging.INFO, "[plugin:battery] hello") in records
        assert (logging.WARNING, "[plugin:battery] careful") in records
        assert (logging.ERROR, "[plugin:battery] broken") in records

    def test_log_never_raises(self, app_data_dir):
        log = _api(app_data_dir).callables()[HOST_PREFIX + "log"]
        assert log("bogus-level", "x") == ""


# ===========================================================================
# fs
# ===========================================================================


class TestFs:
    """Tests for host.fs."""

    def test_exists(self, app_data_dir, tmp_path):
        target = tmp_path / "a.txt"
        api = _api(app_data_dir)
        assert _call(api, "fs_exists", str(target)) == {"ok": True, "value": False}
        target.write_text("x")
        assert _call(api, "fs_exists", str(target)) == {"ok": True, "value": True}

    def test_write_then_read(self, app_data_dir, tmp_path):
        target = tmp_path / "state.json"
        api = _api(app_data_dir)
        assert _call(api, "fs_write_text", str(target), '{"a": 1}')["ok"] is True
        assert _call(api, "fs_read_text", str(target)) == {"ok": True, "value": '{"a": 1}'}

    def test_read_failure_is_error_envelope(self, app_data_dir, tmp_path):
        result = _call(_api(app_data_dir), "fs_read_text", str(tmp_path / "missing"))
        assert result["ok"] is False
        assert "No such file" in result["error"]

    def test_write_failure_raises_host_error(self, app_data_dir, tmp_path):
        with pytest.raises(HostCallError):
            _api(app_data_dir).fs_write_text(str(tmp_path / "no" / "dir" / "f.txt"), "x")

    def test_home_expansion(self, app_data_dir, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / "creds.json").write_text("secret")
        assert _api(app_data_dir).fs_read_text("~/creds.json") == "secret"


# ===========================================================================
# sqlite
# ===========================================================================


@pytest.fixture
def usage_db(tmp_path) -> Path:
    path = tmp_path / "state.vscdb"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE kv (key TEXT, value TEXT, blob BLOB)")
    conn.execute("INSERT INTO kv VALUES ('token', 'abc', x'0aff')")
    conn.execute("INSERT INTO kv VALUES ('plan', 'pro', NULL)")
    conn.commit()
    conn.close()
    return path


class TestSqlite:
    """Tests for host.sqlite.query."""

    def test_query_returns_json_rows(self, app_data_dir, usage_db):
        rows = json.loads(_api(app_data_dir).sqlite_query(
            str(usage_db), "SELECT key, value FROM kv ORDER BY key"
        ))
        assert rows == [{"key": "plan", "value": "pro"}, {"key": "token", "value": "abc"}]

    def test_blob_encoded_as_hex(self, app_data_dir, usage_db):
        rows = json.loads(_api(app_data_dir).sqlite_query(
            str(usage_db), "SELECT blob FROM kv WHERE key = 'token'"
        ))
        assert rows == [{"blob": "0aff"}]

    def test_empty_result(self, app_data_dir, usage_db):
        assert _api(app_data_dir).sqlite_query(str(usage_db), "SELECT * FROM kv WHERE 0") == "[]"

    @pytest.mark.parametrize("sql", [".schema", "  .tables", "\n.dump"])
    def test_dot_commands_rejected(self, app_data_dir, usage_db, sql):
        result = _call(_api(app_data_dir), "sqlite_query", str(usage_db), sql)
        assert result == {"ok": False, "error": "sqlite3 dot-commands are not allowed"}

    def test_writes_are_rejected(self, app_data_dir, usage_db):
        with pytest.raises(HostCallError, match="sqlite3 error"):
            _api(app_data_dir).sqlite_query(str(usage_db), "DELETE FROM kv")

        conn = sqlite3.connect(usage_db)
        assert conn.execute("SELECT count(*) FROM kv").fetchone()[0] == 2
        conn.close()

    def test_missing_database_not_created(self, app_data_dir, tmp_path):
        missing = tmp_path / "nope.db"
        with pytest.raises(HostCallError, match="sqlite3 error"):
            _api(app_data_dir).sqlite_query(str(missing), "SELECT 1")
        assert not missing.exists()

    def test_bad_sql_surfaces_error_text(self, app_data_dir, usage_db):
        result = _call(_api(app_data_dir), "sqlite_query", str(usage_db), "SELECT FROM")
        assert result["ok"] is False
        assert result["error"].startswith("sqlite3 error:")


# ===========================================================================
# keychain
# ===========================================================================


class TestKeychain:
    """Tests for host.keychain.readGenericPassword."""

    def test_unsupported_platform(self, app_data_dir):
        result = _call(_api(app_data_dir, platform="linux"), "keychain_read", "svc")
        assert result == {"ok": False, "error": "keychain API is only supported on macOS"}

    def test_reads_password_on_macos(self, app_data_dir, monkeypatch):
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args)
            return type("R", (), {"returncode": 0, "stdout": "s3cret\n", "stderr": ""})()

        monkeypatch.setattr("probehost.plugins.host_api.subprocess.run", fake_run)
        api = _api(app_data_dir, platform="macos")
        assert api.keychain_read_generic_password("Claude") == "s3cret"
        assert calls == [["security", "find-generic-password", "-s", "Claude", "-w"]]

    def test_lookup_failure(self, app_data_dir, monkeypatch):
        def fake_run(args, **kwargs):
            return type("R", (), {"returncode": 44, "stdout": "", "stderr": "not found\n"})()

        monkeypatch.setattr("probehost.plugins.host_api.subprocess.run", fake_run)
        result = _call(_api(app_data_dir, platform="macos"), "keychain_read", "svc")
        assert result == {"ok": False, "error": "keychain item not found: not found"}


# ===========================================================================
# http
# ===========================================================================


def _request(api: HostApi, **req) -> dict:
    return json.loads(api.http_request(json.dumps(req)))


class TestHttp:
    """Tests for host.http request primitive."""

    def test_get_defaults(self, app_data_dir):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            return httpx.Response(200, headers={"X-Rate": "5"}, text="hello")

        api = _api(app_data_dir, http_transport=httpx.MockTransport(handler))
        resp = _request(api, url="https://example.com/usage")

        assert seen == {"method": "GET", "url": "https://example.com/usage"}
        assert resp["status"] == 200
        assert resp["bodyText"] == "hello"
        assert resp["headers"]["x-rate"] == "5"

    def test_post_with_headers_and_body(self, app_data_dir):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = request.content.decode()
            return httpx.Response(201, json={"ok": True})

        api = _api(app_data_dir, http_transport=httpx.MockTransport(handler))
        resp = _request(
            api,
            url="https://example.com/token",
            method="POST",
            headers={"Authorization": "Bearer t"},
            bodyText='{"grant": "refresh"}',
        )
        assert resp["status"] == 201
        assert json.loads(resp["bodyText"]) == {"ok": True}
        assert seen == {"auth": "Bearer t", "body": '{"grant": "refresh"}'}

    def test_redirect_not_followed(self, app_data_dir):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(302, headers={"Location": "https://example.com/new"})
            return httpx.Response(200, text="followed")

        api = _api(app_data_dir, http_transport=httpx.MockTransport(handler))
        resp = _request(api, url="https://example.com/old")
        assert resp["status"] == 302
        assert resp["headers"]["location"] == "https://example.com/new"

    def test_invalid_method(self, app_data_dir):
        with pytest.raises(HostCallError, match="invalid http method"):
            _request(_api(app_data_dir), url="https://example.com/", method="NOT A METHOD")

    def test_invalid_header_name(self, app_data_dir):
        with pytest.raises(HostCallError, match="invalid header name 'Bad Header'"):
            _request(_api(app_data_dir), url="https://example.com/", headers={"Bad Header": "x"})

    def test_invalid_header_value(self, app_data_dir):
        with pytest.raises(HostCallError, match="invalid header value for 'X-Test'"):
            _request(_api(app_data_dir), url="https://example.com/", headers={"X-Test": "a\r\nb"})

    def test_missing_url(self, app_data_dir):
        with pytest.raises(HostCallError, match="missing url"):
            _request(_api(app_data_dir), method="GET")

    def test_malformed_request_json(self, app_data_dir):
        with pytest.raises(HostCallError, match="invalid request"):
            _api(app_data_dir).http_request("{nope")

    def test_transport_failure(self, app_data_dir):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        api = _api(app_data_dir, http_transport=httpx.MockTransport(handler))
        result = _call(api, "http_request", json.dumps({"url": "https://example.com/"}))
        assert result == {"ok": False, "error": "connection refused"}

    def test_timeout_applied(self, app_data_dir):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["timeout"] = request.extensions["timeout"]
            return httpx.Response(204)

        api = _api(app_data_dir, http_transport=httpx.MockTransport(handler))
        _request(api, url="https://example.com/", timeoutMs=2500)
        assert seen["timeout"]["read"] == 2.5
