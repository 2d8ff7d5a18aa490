"""Tests for the API module."""

import json
import socket
import threading
import time
import urllib.error
import urllib.request

import pytest

from offlinecache.api import ApiError, ProxyServer
from offlinecache.bridge import SKIP_WAITING
from offlinecache.config import Config, InstallerConfig, ServerConfig, StoreConfig, WorkerConfig
from offlinecache.worker import CacheWorker


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


@pytest.fixture
def worker(store_path: str, fetcher) -> CacheWorker:
    """A worker with v1 (/index.html, /app.js) installed and current."""
    config = Config(
        store=StoreConfig(path=store_path),
        installer=InstallerConfig(initial_backoff_ms=0, max_backoff_ms=0),
        worker=WorkerConfig(skip_waiting=False),
    )
    worker = CacheWorker(config, fetcher=fetcher)
    yield worker
    worker.close()


@pytest.fixture
def installed(worker: CacheWorker, fetcher, make_manifest) -> CacheWorker:
    fetcher.add("/index.html", body=b"<html>v1</html>", headers={"Content-Type": "text/html"})
    fetcher.add("/app.js", body=b"js-v1", headers={"Content-Type": "application/javascript"})
    worker.update(make_manifest("v1", must_cache=["/index.html", "/app.js"]))
    worker.skip_waiting()
    fetcher.fail("/index.html")
    fetcher.fail("/app.js")
    return worker


class TestProxyServer:
    """Tests for ProxyServer class."""

    def test_starts_and_stops(self, worker: CacheWorker) -> None:
        """Server starts and stops without errors."""
        server = ProxyServer(ServerConfig(port=get_free_port()), worker)

        assert not server.is_running
        server.start()
        assert server.is_running

        server.stop()
        assert not server.is_running

    def test_start_twice_is_safe(self, worker: CacheWorker) -> None:
        server = ProxyServer(ServerConfig(port=get_free_port()), worker)

        try:
            server.start()
            server.start()  # Should not raise
            assert server.is_running
        finally:
            server.stop()

    def test_stop_without_start_is_safe(self, worker: CacheWorker) -> None:
        ProxyServer(ServerConfig(port=get_free_port()), worker).stop()

    def test_raises_on_port_conflict(self, worker: CacheWorker) -> None:
        """Raises ApiError when port is already in use."""
        config = ServerConfig(port=get_free_port())
        server1 = ProxyServer(config, worker)
        server2 = ProxyServer(config, worker)

        try:
            server1.start()
            with pytest.raises(ApiError):
                server2.start()
        finally:
            server1.stop()
            server2.stop()


class TestProxyEndpoints:
    """Integration tests for proxied and control requests."""

    @pytest.fixture
    def running_server(self, installed: CacheWorker) -> ProxyServer:
        """Start a server and yield it, stopping after test."""
        server = ProxyServer(ServerConfig(port=get_free_port()), installed)
        server.start()
        # Give server time to start
        time.sleep(0.1)
        yield server
        server.stop()

    def _request(self, server: ProxyServer, path: str, method: str = "GET", data: bytes | None = None) -> tuple:
        """Make a request and return (status_code, headers, body)."""
        url = f"http://localhost:{server.config.port}{path}"
        request = urllib.request.Request(url, data=data, method=method)
        try:
            with urllib.request.urlopen(request, timeout=5) as response:
                return response.status, response.headers, response.read()
        except urllib.error.HTTPError as e:
            return e.code, e.headers, e.read()

    def test_serves_cached_asset(self, running_server: ProxyServer) -> None:
        status, headers, body = self._request(running_server, "/index.html")

        assert status == 200
        assert body == b"<html>v1</html>"
        assert headers["Content-Type"] == "text/html"
        assert headers["X-From-Cache"] == "true"
        assert headers["X-Cache-Version"] == "v1"

    def test_offline_fallback(self, running_server: ProxyServer) -> None:
        status, headers, body = self._request(running_server, "/missing.png")

        assert status == 503
        assert body == b"Offline - resource not available"

    def test_head_has_no_body(self, running_server: ProxyServer) -> None:
        status, headers, body = self._request(running_server, "/app.js", method="HEAD")

        assert status == 200
        assert body == b""
        assert headers["Content-Length"] == str(len(b"js-v1"))

    def test_post_is_not_served_from_cache(self, running_server: ProxyServer) -> None:
        status, _, _ = self._request(running_server, "/index.html", method="POST", data=b"x=1")
        assert status == 503

    def test_status_endpoint(self, running_server: ProxyServer) -> None:
        status, headers, body = self._request(running_server, "/_offline/status")

        assert status == 200
        assert headers["Content-Type"] == "application/json"
        data = json.loads(body)
        assert data["current"] == "v1"
        assert data["generations"][0]["entries"] == 2

    def test_updates_without_news(self, running_server: ProxyServer) -> None:
        status, _, body = self._request(running_server, "/_offline/updates?timeout=0")
        assert status == 204
        assert body == b""

    def test_updates_invalid_timeout(self, running_server: ProxyServer) -> None:
        status, _, _ = self._request(running_server, "/_offline/updates?timeout=soon")
        assert status == 400

    def test_updates_long_poll(self, running_server: ProxyServer, installed: CacheWorker, fetcher, make_manifest) -> None:
        """A waiting client hears about the next activation."""
        result = {}

        def poll() -> None:
            result["response"] = self._request(running_server, "/_offline/updates?timeout=5")

        thread = threading.Thread(target=poll)
        thread.start()
        deadline = time.monotonic() + 5
        while installed.bridge.listener_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        fetcher.add("/index.html", body=b"<html>v2</html>")
        fetcher.add("/app.js", body=b"js-v2")
        installed.update(make_manifest("v2", must_cache=["/index.html", "/app.js"]))
        installed.skip_waiting()
        thread.join(timeout=10)

        status, _, body = result["response"]
        assert status == 200
        assert json.loads(body) == {"type": "update-ready", "versionId": "v2"}

    def test_skip_waiting_message(
        self, running_server: ProxyServer, installed: CacheWorker, fetcher, make_manifest
    ) -> None:
        """SKIP_WAITING posted over HTTP activates the waiting generation."""
        fetcher.add("/index.html", body=b"<html>v2</html>")
        fetcher.add("/app.js", body=b"js-v2")
        installed.update(make_manifest("v2", must_cache=["/index.html", "/app.js"]))
        installed.start()

        status, _, _ = self._request(
            running_server,
            "/_offline/message",
            method="POST",
            data=json.dumps({"type": SKIP_WAITING}).encode(),
        )

        assert status == 202
        deadline = time.monotonic() + 5
        while installed.activator.current.version_id != "v2" and time.monotonic() < deadline:
            time.sleep(0.02)
        assert installed.activator.current.version_id == "v2"

    def test_message_invalid_json(self, running_server: ProxyServer) -> None:
        status, _, body = self._request(running_server, "/_offline/message", method="POST", data=b"{nope")
        assert status == 400
        assert "Invalid JSON" in json.loads(body)["error"]

    def test_message_without_type(self, running_server: ProxyServer) -> None:
        status, _, _ = self._request(running_server, "/_offline/message", method="POST", data=b'{"kind": 1}')
        assert status == 400

    def test_wrong_method(self, running_server: ProxyServer) -> None:
        status, _, _ = self._request(running_server, "/_offline/status", method="DELETE")
        assert status == 405

    def test_unknown_control_route(self, running_server: ProxyServer) -> None:
        status, _, body = self._request(running_server, "/_offline/nope")
        assert status == 404
        assert json.loads(body) == {"error": "Not found"}

    def test_client_disconnect_cancels_fetch(self, running_server: ProxyServer, fetcher) -> None:
        """Closing the connection mid-request stops the upstream fetch."""
        fetcher.delay = 5.0
        fetcher.add("/slow", body=b"late")

        client = socket.create_connection(("localhost", running_server.config.port), timeout=5)
        try:
            client.sendall(b"GET /slow HTTP/1.1\r\nHost: localhost\r\n\r\n")
            deadline = time.monotonic() + 2.0
            while "/slow" not in fetcher.calls and time.monotonic() < deadline:
                time.sleep(0.01)
            assert "/slow" in fetcher.calls
        finally:
            client.close()

        # Well before the interceptor's own network timeout would fire
        deadline = time.monotonic() + 2.0
        while not fetcher.cancelled and time.monotonic() < deadline:
            time.sleep(0.01)
        assert fetcher.cancelled == ["/slow"]
