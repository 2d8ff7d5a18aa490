"""Tests for the command-line entry point."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from offlinecache import main
from offlinecache.store import CacheStore


@pytest.fixture
def static_dir(tmp_path: Path) -> Path:
    root = tmp_path / "static"
    root.mkdir()
    (root / "index.html").write_text("<html></html>")
    (root / "app.js").write_text("console.log(1);")
    return root


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv("OFFLINECACHE_STORE_PATH", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(f"store:\n  path: {tmp_path / 'cache.db'}\nserver:\n  enabled: false\n")
    return path


@pytest.fixture
def install_config(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv("OFFLINECACHE_STORE_PATH", raising=False)
    monkeypatch.delenv("OFFLINECACHE_ORIGIN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        f"store:\n  path: {tmp_path / 'cache.db'}\n"
        "origin: https://app.example.com\n"
        "installer:\n  initial_backoff_ms: 0\n  max_backoff_ms: 0\n"
        "server:\n  enabled: false\n"
    )
    return path


@pytest.fixture
def manifest_file(tmp_path: Path) -> Path:
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps({"versionId": "v1", "entries": [{"key": "/index.html", "policy": "must-cache"}]}))
    return path


def _run(*argv: str) -> None:
    with patch.object(sys, "argv", ["offlinecache", *argv]):
        main()


class TestManifestCommand:
    """Tests for the manifest subcommand."""

    def test_prints_manifest(self, static_dir: Path, capsys) -> None:
        _run("manifest", str(static_dir))

        data = json.loads(capsys.readouterr().out)
        assert data["versionId"].startswith("1.0.")
        assert [e["key"] for e in data["entries"]] == ["/app.js", "/index.html"]

    def test_writes_output_file(self, static_dir: Path, tmp_path: Path) -> None:
        output = tmp_path / "manifest.json"

        _run("manifest", str(static_dir), "--prefix", "/static/", "--opportunistic", "*.js", "-o", str(output))

        data = json.loads(output.read_text())
        assert {e["key"]: e["policy"] for e in data["entries"]} == {
            "/static/app.js": "opportunistic",
            "/static/index.html": "must-cache",
        }

    def test_missing_directory_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _run("manifest", str(tmp_path / "missing"))
        assert exc_info.value.code == 1


class TestStatusCommand:
    """Tests for the status subcommand."""

    def test_empty_store(self, config_file: Path, capsys) -> None:
        _run("status", "-c", str(config_file))

        out = capsys.readouterr().out
        assert "Current: (none)" in out
        assert "No generations stored." in out

    def test_json(self, config_file: Path, capsys) -> None:
        _run("status", "-c", str(config_file), "--json")

        data = json.loads(capsys.readouterr().out)
        assert data["current"] is None
        assert data["generations"] == []

    def test_missing_config_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _run("status", "-c", str(tmp_path / "nope.yaml"))
        assert exc_info.value.code == 1


class TestEvictCommand:
    """Tests for the evict subcommand."""

    def test_nothing_to_evict(self, config_file: Path, capsys) -> None:
        _run("evict", "-c", str(config_file))
        assert "Nothing to evict." in capsys.readouterr().out


class TestInstallCommand:
    """Tests for the install subcommand."""

    @patch("offlinecache.fetcher.requests.Session.request")
    def test_installs_and_activates(
        self, mock_request: Mock, install_config: Path, manifest_file: Path, tmp_path: Path, capsys
    ) -> None:
        response = MagicMock()
        response.status_code = 200
        response.reason = "OK"
        response.headers = {"Content-Type": "text/html"}
        response.iter_content.side_effect = lambda *args, **kwargs: iter([b"<html></html>"])
        mock_request.return_value = response

        _run("install", "-c", str(install_config), str(manifest_file))

        assert "Current generation: v1" in capsys.readouterr().out
        assert mock_request.call_args[0][1] == "https://app.example.com/index.html"

        store = CacheStore(str(tmp_path / "cache.db"))
        try:
            assert store.current_pointer() == "v1"
            assert store.get("v1", "GET https://app.example.com/index.html").body == b"<html></html>"
        finally:
            store.close()

    @patch("offlinecache.fetcher.requests.Session.request")
    def test_unreachable_entry_exits(
        self, mock_request: Mock, install_config: Path, manifest_file: Path, tmp_path: Path
    ) -> None:
        """A must-cache entry that cannot be fetched leaves nothing behind."""
        mock_request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(SystemExit) as exc_info:
            _run("install", "-c", str(install_config), str(manifest_file))
        assert exc_info.value.code == 1

        store = CacheStore(str(tmp_path / "cache.db"))
        try:
            assert store.list_generations() == set()
            assert store.current_pointer() is None
        finally:
            store.close()

    def test_no_manifest_exits(self, config_file: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _run("install", "-c", str(config_file))
        assert exc_info.value.code == 1
