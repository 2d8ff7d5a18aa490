"""Network transport for installer and interceptor fetches."""

import logging
import threading
import time

import requests

from .models import Request, Response, ResponseSource, canonical_url

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "offlinecache/0.1"

# Default deadline for a whole fetch (connect + headers + body), in seconds.
DEFAULT_FETCH_TIMEOUT = 10.0

# Read size while streaming bodies. Cancellation and the deadline are
# checked between chunks.
CHUNK_SIZE = 64 * 1024

# requests decodes transfer and content encodings, so these no longer
# describe the body we hand back.
_DROPPED_HEADERS = frozenset(
    {
        "connection",
        "content-encoding",
        "content-length",
        "keep-alive",
        "transfer-encoding",
    }
)


class NetworkError(Exception):
    """Raised when a fetch fails at the transport level."""

    pass


class NetworkTimeout(NetworkError):
    """Raised when a fetch exceeds its deadline."""

    pass


class FetchCancelled(NetworkError):
    """Raised when the caller abandons a fetch."""

    pass


class Fetcher:
    """Fetches requests over HTTP using a shared requests session."""

    def __init__(
        self,
        origin: str | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        """Initialize the fetcher.

        Args:
            origin: Base URL that relative request URLs are resolved against.
            user_agent: User-Agent header sent when the request has none.
            timeout: Default deadline in seconds for a single fetch.
        """
        self.origin = origin
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["User-Agent"] = user_agent

    def resolve(self, url: str) -> str:
        """Return the absolute URL for a request URL.

        Raises:
            NetworkError: If url is malformed, or relative with no origin configured.
        """
        try:
            absolute = canonical_url(url, self.origin)
        except ValueError as e:
            raise NetworkError(f"Cannot fetch '{url}': {e}") from e
        if not absolute.startswith(("http://", "https://")):
            raise NetworkError(f"Cannot fetch '{url}': not an absolute http(s) URL and no origin configured")
        return absolute

    def fetch(
        self,
        request: Request,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Response:
        """Perform a request and read the whole body.

        Args:
            request: Request to send.
            timeout: Deadline in seconds for the whole fetch; defaults to the
                fetcher's timeout.
            cancel: When set, the fetch stops at the next chunk boundary and
                the partial body is dropped.

        Returns:
            The network response, whatever its status code.

        Raises:
            NetworkTimeout: If the deadline passes.
            FetchCancelled: If cancel is set.
            NetworkError: On any other transport failure.
        """
        if timeout is None:
            timeout = self.timeout
        url = self.resolve(request.url)
        deadline = time.monotonic() + timeout

        if cancel is not None and cancel.is_set():
            raise FetchCancelled(f"Fetch of {url} cancelled before start")

        try:
            resp = self._session.request(
                request.method,
                url,
                headers=request.headers,
                timeout=timeout,
                stream=True,
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise NetworkTimeout(f"Timed out fetching {url} after {timeout}s") from e
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch {url}: {e}") from e

        chunks: list[bytes] = []
        try:
            for chunk in resp.iter_content(CHUNK_SIZE):
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled(f"Fetch of {url} cancelled")
                if time.monotonic() > deadline:
                    raise NetworkTimeout(f"Timed out reading {url} after {timeout}s")
                chunks.append(chunk)
        except requests.Timeout as e:
            raise NetworkTimeout(f"Timed out reading {url} after {timeout}s") from e
        except requests.RequestException as e:
            raise NetworkError(f"Failed to read {url}: {e}") from e
        except NetworkError:
            chunks.clear()
            raise
        finally:
            resp.close()

        headers = {name: value for name, value in resp.headers.items() if name.lower() not in _DROPPED_HEADERS}
        logger.debug("Fetched %s %s -> %d", request.method, url, resp.status_code)
        return Response(
            status=resp.status_code,
            status_text=resp.reason or "",
            headers=headers,
            body=b"".join(chunks),
            source=ResponseSource.NETWORK,
        )

    def close(self) -> None:
        self._session.close()
