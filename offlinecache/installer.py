"""Installation of new cache generations from an asset manifest."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from .fetcher import FetchCancelled, Fetcher, NetworkError
from .manifest import AssetManifest, FetchPolicy, ManifestEntry
from .models import CacheGeneration, GenerationState, Request, Response, request_key
from .store import CacheStore, StoreError

logger = logging.getLogger(__name__)

# Parallel entry fetches per install. Entries target disjoint keys, so the
# only contention is on the store lock.
DEFAULT_MAX_WORKERS = 4

# Generations in these states are complete; installing them again is a no-op.
_INSTALLED_STATES = frozenset(
    {
        GenerationState.SEALED,
        GenerationState.CURRENT,
        GenerationState.SUPERSEDED,
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts per entry, including the first.
        initial_backoff: Delay in seconds after the first failed attempt.
        max_backoff: Upper bound in seconds for any single delay.
    """

    max_attempts: int = 3
    initial_backoff: float = 0.2
    max_backoff: float = 5.0

    def delay(self, attempt: int) -> float:
        """Return the delay to wait after failed attempt number `attempt` (1-based)."""
        return min(self.initial_backoff * (2 ** (attempt - 1)), self.max_backoff)


class InstallAborted(Exception):
    """Raised when a generation cannot be completed and has been discarded."""

    def __init__(self, version_id: str, message: str, failed_keys: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.version_id = version_id
        self.failed_keys = failed_keys


class Installer:
    """Populates and seals new generations.

    At most one install runs per version id. Concurrent calls for the same
    version join the running attempt and share its result, so each manifest
    entry is fetched by exactly one worker.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        retry: RetryPolicy | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        fetch_timeout: float | None = None,
        origin: str | None = None,
    ) -> None:
        """Initialize the installer.

        Args:
            store: Store that receives the new generation.
            fetcher: Network transport for entry fetches.
            retry: Retry policy per entry.
            max_workers: Parallel fetches per install.
            fetch_timeout: Deadline per fetch attempt, None for the fetcher default.
            origin: Base URL used to canonicalize relative manifest keys.
        """
        self._store = store
        self._fetcher = fetcher
        self._retry = retry or RetryPolicy()
        self._max_workers = max_workers
        self._fetch_timeout = fetch_timeout
        self._origin = origin
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}

    def install(self, manifest: AssetManifest, timeout: float | None = None) -> CacheGeneration:
        """Install manifest as a new sealed generation.

        Args:
            manifest: Resources to install.
            timeout: Seconds this caller is willing to wait. Expiry raises
                TimeoutError for this caller only; the install keeps running.

        Returns:
            The sealed generation (or the existing one if already installed).

        Raises:
            InstallAborted: If a must-cache entry failed or storage rejected a write.
            TimeoutError: If timeout expired first.
        """
        version_id = manifest.version_id

        with self._lock:
            future = self._inflight.get(version_id)
            if future is None:
                existing = self._store.get_generation(version_id)
                if existing is not None and existing.state in _INSTALLED_STATES:
                    logger.debug("Generation %s already installed (%s)", version_id, existing.state.value)
                    return existing

                future = Future()
                self._inflight[version_id] = future
                thread = threading.Thread(
                    target=self._run,
                    args=(manifest, future),
                    name=f"install-{version_id}",
                    daemon=True,
                )
                thread.start()
            else:
                logger.info("Joining in-flight install of %s", version_id)

        return future.result(timeout=timeout)

    def is_installing(self, version_id: str) -> bool:
        with self._lock:
            return version_id in self._inflight

    def _run(self, manifest: AssetManifest, future: Future) -> None:
        """Install thread body: run the install and publish its outcome."""
        try:
            generation = self._install(manifest)
        except Exception as e:
            with self._lock:
                self._inflight.pop(manifest.version_id, None)
            future.set_exception(e)
        else:
            with self._lock:
                self._inflight.pop(manifest.version_id, None)
            future.set_result(generation)

    def _install(self, manifest: AssetManifest) -> CacheGeneration:
        version_id = manifest.version_id
        logger.info("Installing generation %s (%d entries)", version_id, len(manifest.entries))

        try:
            existing = self._store.get_generation(version_id)
            if existing is not None:
                # Only an INSTALLING leftover from an interrupted run can reach here
                logger.warning("Discarding stale partial generation %s", version_id)
                self._store.delete_generation(version_id)
            self._store.create_generation(manifest)
        except StoreError as e:
            raise InstallAborted(version_id, f"Could not create generation {version_id}: {e}") from e

        abort = threading.Event()
        failed_keys: list[str] = []
        skipped_keys: list[str] = []
        fatal_error: Exception | None = None

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix=f"fetch-{version_id}") as executor:
            futures = {executor.submit(self._populate, version_id, entry, abort): entry for entry in manifest.entries}
            for done in as_completed(futures):
                entry = futures[done]
                try:
                    done.result()
                except FetchCancelled:
                    continue
                except StoreError as e:
                    logger.error("Storage rejected %s for %s: %s", entry.key, version_id, e)
                    if fatal_error is None:
                        fatal_error = e
                    abort.set()
                except NetworkError as e:
                    if entry.policy is FetchPolicy.MUST_CACHE:
                        logger.error("Required entry %s failed for %s: %s", entry.key, version_id, e)
                        failed_keys.append(entry.key)
                        abort.set()
                    else:
                        logger.warning("Skipping opportunistic entry %s: %s", entry.key, e)
                        skipped_keys.append(entry.key)
                except Exception as e:
                    logger.exception("Unexpected error installing %s for %s: %s", entry.key, version_id, e)
                    if fatal_error is None:
                        fatal_error = e
                    abort.set()

        if fatal_error is not None or failed_keys:
            self._discard(version_id)
            if fatal_error is not None:
                raise InstallAborted(
                    version_id,
                    f"Install of {version_id} aborted: {fatal_error}",
                ) from fatal_error
            raise InstallAborted(
                version_id,
                f"Install of {version_id} aborted: required entries failed: {', '.join(sorted(failed_keys))}",
                failed_keys=tuple(sorted(failed_keys)),
            )

        try:
            generation = self._store.seal_generation(version_id)
        except StoreError as e:
            self._discard(version_id)
            raise InstallAborted(version_id, f"Could not seal generation {version_id}: {e}") from e

        logger.info(
            "Sealed generation %s (%d entries, %d skipped)",
            version_id,
            len(manifest.entries) - len(skipped_keys),
            len(skipped_keys),
        )
        return generation

    def _discard(self, version_id: str) -> None:
        try:
            self._store.delete_generation(version_id)
        except StoreError as e:
            # Left INSTALLING; the next start discards it
            logger.error("Failed to discard partial generation %s: %s", version_id, e)

    def _populate(self, version_id: str, entry: ManifestEntry, abort: threading.Event) -> None:
        """Fetch one entry and write it into the pending generation."""
        response = self._fetch_with_retry(entry, abort)
        if abort.is_set():
            raise FetchCancelled(f"Install of {version_id} aborted")
        self._store.put(version_id, request_key("GET", entry.key, self._origin), response)

    def _fetch_with_retry(self, entry: ManifestEntry, abort: threading.Event) -> Response:
        request = Request(url=entry.key)
        last_error = ""

        for attempt in range(1, self._retry.max_attempts + 1):
            if abort.is_set():
                raise FetchCancelled(f"Fetch of {entry.key} cancelled")
            try:
                response = self._fetcher.fetch(request, timeout=self._fetch_timeout, cancel=abort)
            except FetchCancelled:
                raise
            except NetworkError as e:
                last_error = str(e)
            else:
                if response.ok:
                    return response
                last_error = f"HTTP {response.status}"

            if attempt < self._retry.max_attempts:
                delay = self._retry.delay(attempt)
                logger.warning(
                    "Fetch of %s failed (attempt %d/%d, retrying in %.1fs): %s",
                    entry.key,
                    attempt,
                    self._retry.max_attempts,
                    delay,
                    last_error,
                )
                if abort.wait(delay):
                    raise FetchCancelled(f"Fetch of {entry.key} cancelled")

        raise NetworkError(f"Giving up on {entry.key} after {self._retry.max_attempts} attempts: {last_error}")
