"""Request interception: answer each request from cache, network or fallback.

Strategies:
- must-cache keys: served from the current generation, no network call
- opportunistic and unmatched keys: network-first with a short timeout,
  falling back to the current generation (unless configured cache-first
  or network-only for unmatched keys)
- non-GET requests and bypassed URLs: network-only, never cached

Whatever happens on the network, the caller gets a response: fresh,
cached, a cached navigation fallback page, or the offline response.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from .activator import VersionActivator
from .config import InterceptorConfig
from .fetcher import FetchCancelled, Fetcher, NetworkError, NetworkTimeout
from .manifest import FetchPolicy
from .models import CacheGeneration, Request, Response, ResponseSource, request_key
from .store import CacheStore, StoreError

logger = logging.getLogger(__name__)

# How often a waiting request checks its cancel event.
CANCEL_POLL_INTERVAL = 0.05

# Parallel network fetches on the interception path.
MAX_FETCH_WORKERS = 8

# Status returned to a caller that abandoned its own request.
CLIENT_CLOSED_STATUS = 499


class RequestInterceptor:
    """Decides, per request, where the response comes from."""

    def __init__(
        self,
        store: CacheStore,
        activator: VersionActivator,
        fetcher: Fetcher,
        config: InterceptorConfig | None = None,
        origin: str | None = None,
    ) -> None:
        self._store = store
        self._activator = activator
        self._fetcher = fetcher
        self._config = config or InterceptorConfig()
        self._origin = origin
        self._executor = ThreadPoolExecutor(max_workers=MAX_FETCH_WORKERS, thread_name_prefix="intercept")
        # Manifests are immutable per generation, so their policy maps can be kept
        self._policies: dict[str, dict[str, FetchPolicy]] = {}
        self._policies_lock = threading.Lock()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def handle(self, request: Request, cancel: threading.Event | None = None) -> Response:
        """Answer a request. Never raises for network or cache failures.

        Args:
            request: The intercepted request.
            cancel: Set by the caller when it abandons the request.
        """
        try:
            if request.method.upper() != "GET" or self._is_bypassed(request):
                return self._network_only(request, cancel)

            key = request.key(self._origin)
            with self._activator.lease() as generation:
                policy = self._policy_for(generation, key)
                if policy is FetchPolicy.MUST_CACHE and generation is not None:
                    cached = self._read(generation, key)
                    if cached is not None:
                        logger.debug("Serving %s from %s", key, generation.version_id)
                        return cached
                    logger.warning("Must-cache entry %s missing from %s", key, generation.version_id)

                if policy is None and self._config.default_policy == "cache-first" and generation is not None:
                    cached = self._read(generation, key)
                    if cached is not None:
                        return cached

            if policy is None and self._config.default_policy == "network-only":
                return self._network_only(request, cancel)

            return self._network_first(request, key, cancel)
        except FetchCancelled:
            logger.debug("Request for %s abandoned by caller", request.url)
            return Response(status=CLIENT_CLOSED_STATUS, status_text="Client Closed Request")
        except StoreError as e:
            logger.error("Cache store error while handling %s: %s", request.url, e)
            return self._offline_response()
        except ValueError as e:
            logger.info("Malformed request URL %r: %s", request.url, e)
            return self._offline_response()

    def _is_bypassed(self, request: Request) -> bool:
        return any(pattern in request.url for pattern in self._config.bypass)

    def _policy_for(self, generation: CacheGeneration | None, key: str) -> FetchPolicy | None:
        """Return the manifest policy for key in generation, None if unmatched."""
        if generation is None:
            return None

        with self._policies_lock:
            policies = self._policies.get(generation.version_id)
        if policies is None:
            manifest = self._store.get_manifest(generation.version_id)
            policies = {}
            if manifest is not None:
                policies = {request_key("GET", e.key, self._origin): e.policy for e in manifest.entries}
            with self._policies_lock:
                self._policies[generation.version_id] = policies
        return policies.get(key)

    def forget(self, version_id: str) -> None:
        """Drop cached policy data for an evicted generation."""
        with self._policies_lock:
            self._policies.pop(version_id, None)

    def _read(self, generation: CacheGeneration, key: str) -> Response | None:
        stored = self._store.get(generation.version_id, key)
        if stored is None:
            return None
        headers = dict(stored.headers)
        headers["X-From-Cache"] = "true"
        headers["X-Cache-Version"] = generation.version_id
        return Response(
            status=stored.status,
            status_text=stored.status_text,
            headers=headers,
            body=stored.body,
            stored_at=stored.stored_at,
            source=ResponseSource.CACHE,
        )

    def _fetch(self, request: Request, cancel: threading.Event | None) -> Response:
        """Run a network fetch on the pool, waiting at most network_timeout.

        The caller stops waiting as soon as cancel is set or the deadline
        passes; the pool thread is told to stop and drop its partial body.
        """
        timeout = self._config.network_timeout
        deadline = time.monotonic() + timeout
        abort = threading.Event()
        future: Future[Response] = self._executor.submit(self._fetcher.fetch, request, timeout, abort)

        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled(f"Request for {request.url} cancelled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise NetworkTimeout(f"No response for {request.url} within {timeout}s")
                try:
                    return future.result(timeout=min(CANCEL_POLL_INTERVAL, remaining))
                except FutureTimeout:
                    continue
        except NetworkError:
            abort.set()
            future.cancel()
            raise

    def _network_only(self, request: Request, cancel: threading.Event | None) -> Response:
        try:
            return self._fetch(request, cancel)
        except FetchCancelled:
            raise
        except NetworkError as e:
            logger.info("Network unavailable for %s: %s", request.url, e)
            return self._offline_response()

    def _network_first(self, request: Request, key: str, cancel: threading.Event | None) -> Response:
        try:
            response = self._fetch(request, cancel)
        except FetchCancelled:
            raise
        except NetworkError as e:
            logger.info("Network failed for %s, falling back to cache: %s", request.url, e)
            return self._cache_fallback(request, key)

        if response.ok and self._config.backfill:
            self._backfill(key, response)
        return response

    def _backfill(self, key: str, response: Response) -> None:
        """Best-effort copy of a fresh response into the current generation."""
        generation = self._activator.current
        if generation is None:
            return
        try:
            self._store.put_side(generation.version_id, key, response)
        except StoreError as e:
            logger.debug("Backfill of %s into %s skipped: %s", key, generation.version_id, e)

    def _cache_fallback(self, request: Request, key: str) -> Response:
        # Re-resolve: an activation may have completed while the network was tried
        with self._activator.lease() as generation:
            if generation is not None:
                cached = self._read(generation, key)
                if cached is not None:
                    return cached

                if request.is_navigation:
                    for fallback in self._config.navigation_fallback:
                        cached = self._read(generation, request_key("GET", fallback, self._origin))
                        if cached is not None:
                            logger.info("Offline: serving %s for navigation to %s", fallback, request.url)
                            return cached

        logger.info("Offline with no cached copy of %s", request.url)
        return self._offline_response()

    def _offline_response(self) -> Response:
        body = self._config.offline_body.encode("utf-8")
        return Response(
            status=self._config.offline_status,
            status_text="Service Unavailable" if self._config.offline_status == 503 else "Offline",
            headers={
                "Content-Type": self._config.offline_content_type,
                "X-From-Cache": "true",
            },
            body=body,
            source=ResponseSource.FALLBACK,
        )
