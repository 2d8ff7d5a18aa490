"""HTTP front end: a local caching proxy in front of the cache worker."""

import json
import logging
import select
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

from .config import ServerConfig
from .models import Request, Response
from .store import StoreError
from .worker import CacheWorker

logger = logging.getLogger(__name__)

# Longest a client may hold an /updates long-poll open, in seconds.
MAX_UPDATE_WAIT_SECONDS = 60.0

# Default long-poll wait when the client does not ask for one.
DEFAULT_UPDATE_WAIT_SECONDS = 25.0

# Largest request body accepted for proxied requests and client messages.
MAX_REQUEST_BODY = 1024 * 1024

# How often a proxied request checks whether its client hung up.
DISCONNECT_POLL_INTERVAL = 0.05

# Request headers not forwarded to the interceptor.
_HOP_BY_HOP_HEADERS = frozenset({"connection", "keep-alive", "proxy-connection", "transfer-encoding", "upgrade"})


class ApiError(Exception):
    """Raised when the proxy server fails to start."""
    pass


class ProxyHandler(BaseHTTPRequestHandler):
    """Routes control endpoints to the worker and everything else through the interceptor."""

    protocol_version = "HTTP/1.1"

    # Class-level references set by factory
    worker: Optional[CacheWorker] = None
    control_prefix: str = "/_offline"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _send_no_content(self) -> None:
        self.send_response(204)
        self.send_header("Content-Length", "0")
        self.send_header("Connection", "close")
        self.end_headers()

    def _send_response(self, response: Response) -> None:
        """Write an interceptor response to the client."""
        self.send_response(response.status, response.status_text or None)
        for name, value in response.headers.items():
            if name.lower() in ("content-length", "connection"):
                continue
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        if length > MAX_REQUEST_BODY:
            raise ValueError(f"Request body too large ({length} bytes)")
        return self.rfile.read(length) if length > 0 else b""

    def _dispatch(self) -> None:
        """Handle any request method."""
        if self.worker is None:
            self._send_error_json(503, "Cache worker not available")
            return

        try:
            path = urlsplit(self.path).path
            if path.startswith(self.control_prefix + "/"):
                self._handle_control(path[len(self.control_prefix):])
            else:
                self._handle_proxy()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Client %s disconnected", self.address_string())
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    do_GET = _dispatch
    do_HEAD = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_DELETE = _dispatch
    do_PATCH = _dispatch
    do_OPTIONS = _dispatch

    def _handle_control(self, route: str) -> None:
        if route == "/status" and self.command == "GET":
            self._handle_status()
        elif route == "/updates" and self.command == "GET":
            self._handle_updates()
        elif route == "/message" and self.command == "POST":
            self._handle_message()
        elif route in ("/status", "/updates", "/message"):
            self._send_error_json(405, "Method not allowed")
        else:
            self._send_error_json(404, "Not found")

    def _handle_status(self) -> None:
        """Handle GET {prefix}/status - worker and store summary."""
        try:
            self._send_json(200, self.worker.status())
        except StoreError as e:
            logger.error("Store error in status: %s", e)
            self._send_error_json(500, "Store error")

    def _handle_updates(self) -> None:
        """Handle GET {prefix}/updates - long-poll for the next update notification."""
        query = parse_qs(urlsplit(self.path).query)
        try:
            wait = float(query.get("timeout", [DEFAULT_UPDATE_WAIT_SECONDS])[0])
        except ValueError:
            self._send_error_json(400, "timeout must be a number")
            return
        wait = max(0.0, min(wait, MAX_UPDATE_WAIT_SECONDS))

        with self.worker.bridge.subscribe() as subscription:
            notification = subscription.receive(timeout=wait)

        if notification is None:
            self._send_no_content()
        else:
            self._send_json(200, notification.to_message())

    def _handle_message(self) -> None:
        """Handle POST {prefix}/message - client message for the worker."""
        try:
            message = json.loads(self._read_body() or b"null")
        except ValueError as e:
            self._send_error_json(400, f"Invalid JSON message: {e}")
            return
        if not isinstance(message, dict) or "type" not in message:
            self._send_error_json(400, "Message must be a JSON object with a 'type'")
            return

        self.worker.bridge.post_message(message)
        self._send_json(202, {"accepted": True})

    def _handle_proxy(self) -> None:
        """Answer any other request through the interceptor."""
        headers = {name: value for name, value in self.headers.items() if name.lower() not in _HOP_BY_HOP_HEADERS}
        if self.command not in ("GET", "HEAD"):
            try:
                # Drained so the connection stays well-formed; bodies are not forwarded
                self._read_body()
            except ValueError as e:
                self._send_error_json(413, str(e))
                return

        request = Request(
            url=self.path,
            method="GET" if self.command == "HEAD" else self.command,
            headers=headers,
            mode=self.headers.get("Sec-Fetch-Mode", "cors"),
        )
        cancel = threading.Event()
        done = threading.Event()
        watcher = threading.Thread(
            target=self._watch_disconnect,
            args=(cancel, done),
            name="proxy-disconnect-watch",
            daemon=True,
        )
        watcher.start()
        try:
            response = self.worker.handle(request, cancel)
        finally:
            done.set()

        if cancel.is_set():
            logger.debug("Client %s went away before %s was answered", self.address_string(), self.path)
            self.close_connection = True
            return
        self._send_response(response)

    def _watch_disconnect(self, cancel: threading.Event, done: threading.Event) -> None:
        """Set cancel if the client closes its connection before done is set."""
        while not done.is_set():
            try:
                readable, _, _ = select.select([self.connection], [], [], DISCONNECT_POLL_INTERVAL)
                if not readable:
                    continue
                # Pipelined data is not a hang-up; stop watching
                if self.connection.recv(1, socket.MSG_PEEK) == b"":
                    cancel.set()
            except (OSError, ValueError):
                if not done.is_set():
                    cancel.set()
            return


def _create_handler_class(worker: CacheWorker, control_prefix: str) -> type:
    """Create a handler class with the worker and config bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.worker = worker
    BoundProxyHandler.control_prefix = control_prefix
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP server answering client requests through the cache worker."""

    def __init__(self, config: ServerConfig, worker: CacheWorker) -> None:
        """Initialize the proxy server.

        Args:
            config: Server configuration.
            worker: Cache worker that answers requests.
        """
        self.config = config
        self.worker = worker
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the proxy server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(self.worker, self.config.control_prefix)
            self._server = ThreadingHTTPServer(("", self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on port %d", self.config.port)

        except OSError as e:
            # Provide specific guidance based on error type
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or offlinecache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ApiError(f"Failed to start proxy server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            server = self._server
            if server is None:
                break
            try:
                server.handle_request()
            except (OSError, ValueError):
                # Socket closed by stop()
                if self._shutdown_event.is_set():
                    break
                raise

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
