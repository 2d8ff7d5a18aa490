"""Shared fixtures for offlinecache tests."""

import threading
import time
from pathlib import Path

import pytest

from offlinecache.fetcher import FetchCancelled, NetworkError
from offlinecache.manifest import AssetManifest, FetchPolicy, ManifestEntry
from offlinecache.models import Request, Response
from offlinecache.store import CacheStore


class FakeFetcher:
    """Scripted network: URLs map to a response, an exception, or a list of outcomes."""

    def __init__(self, delay: float = 0.0) -> None:
        self.origin = None
        self.delay = delay
        self.calls: list[str] = []
        self.cancelled: list[str] = []
        self._outcomes: dict[str, list] = {}
        self._lock = threading.Lock()

    def add(self, url: str, body: bytes = b"", status: int = 200, headers: dict | None = None) -> None:
        self._outcomes[url] = [Response(status=status, body=body, headers=headers or {})]

    def fail(self, url: str, error: Exception | None = None) -> None:
        self._outcomes[url] = [error or NetworkError(f"{url} unreachable")]

    def script(self, url: str, outcomes: list) -> None:
        """Return outcomes in order; the last one repeats."""
        self._outcomes[url] = list(outcomes)

    def count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)

    def fetch(self, request: Request, timeout: float | None = None, cancel: threading.Event | None = None) -> Response:
        with self._lock:
            self.calls.append(request.url)
            outcomes = self._outcomes.get(request.url)
            if outcomes and len(outcomes) > 1:
                outcome = outcomes.pop(0)
            elif outcomes:
                outcome = outcomes[0]
            else:
                outcome = NetworkError(f"{request.url} unreachable")

        if self.delay:
            if cancel is not None:
                if cancel.wait(self.delay):
                    with self._lock:
                        self.cancelled.append(request.url)
                    raise FetchCancelled(f"{request.url} cancelled")
            else:
                time.sleep(self.delay)

        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        pass


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def store_path(tmp_path: Path) -> str:
    return str(tmp_path / "cache.db")


@pytest.fixture
def store(store_path: str) -> CacheStore:
    """Create a cache store in a temporary directory."""
    store = CacheStore(store_path)
    yield store
    store.close()


def _build_manifest(version_id: str, must_cache: list[str] = (), opportunistic: list[str] = ()) -> AssetManifest:
    entries = [ManifestEntry(key=key, policy=FetchPolicy.MUST_CACHE) for key in must_cache]
    entries += [ManifestEntry(key=key, policy=FetchPolicy.OPPORTUNISTIC) for key in opportunistic]
    return AssetManifest(version_id=version_id, entries=tuple(entries))


@pytest.fixture
def make_manifest():
    """Return a helper that builds a manifest from must-cache and opportunistic keys."""
    return _build_manifest
