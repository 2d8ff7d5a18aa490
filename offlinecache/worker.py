"""Background caching worker: wires the components and runs the update loop."""

import logging
import threading
import time
from typing import Any

from .activator import ActivationError, VersionActivator
from .bridge import SKIP_WAITING, ClientBridge
from .config import Config
from .fetcher import Fetcher
from .installer import InstallAborted, Installer, RetryPolicy
from .interceptor import RequestInterceptor
from .manifest import AssetManifest, ManifestError, load_manifest
from .models import CacheGeneration, GenerationState, Request, Response
from .store import CacheStore, StoreError

logger = logging.getLogger(__name__)

# Upper bound on how long the loop blocks waiting for client messages, so
# timers and stop requests are noticed promptly.
LOOP_TICK_SECONDS = 1.0


class CacheWorker:
    """The background caching context.

    Owns the store and every component that touches it. Foreground clients
    reach it only through handle() and the client bridge.
    """

    def __init__(
        self,
        config: Config,
        store: CacheStore | None = None,
        fetcher: Fetcher | None = None,
        bridge: ClientBridge | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Full configuration.
            store: Cache store; opened from config.store when omitted.
            fetcher: Network transport; built from config when omitted.
            bridge: Client bridge; a new one when omitted.
        """
        self.config = config
        self.store = store or CacheStore(config.store.path, max_bytes=config.store.max_bytes)
        self.fetcher = fetcher or Fetcher(origin=config.origin, timeout=config.installer.fetch_timeout)
        self.bridge = bridge or ClientBridge()
        self.activator = VersionActivator(self.store, self.bridge)
        self.installer = Installer(
            self.store,
            self.fetcher,
            retry=RetryPolicy(
                max_attempts=config.installer.max_attempts,
                initial_backoff=config.installer.initial_backoff_ms / 1000,
                max_backoff=config.installer.max_backoff_ms / 1000,
            ),
            max_workers=config.installer.max_workers,
            fetch_timeout=config.installer.fetch_timeout,
            origin=config.origin,
        )
        self.interceptor = RequestInterceptor(
            self.store,
            self.activator,
            self.fetcher,
            config=config.interceptor,
            origin=config.origin,
        )
        self._waiting: CacheGeneration | None = None
        self._waiting_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def recover(self) -> CacheGeneration | None:
        """Restore durable state: drop partial installs, reload the pointer, evict."""
        self.store.discard_incomplete()
        current = self.activator.load()

        # A generation sealed but never activated (stopped in between)
        sealed = [g for g in self.store.generations() if g.state is GenerationState.SEALED]
        keep = None
        if sealed and (current is None or sealed[-1].sequence > current.sequence):
            keep = sealed[-1]

        # Never current, so no reader can hold them
        for stale in sealed:
            if keep is None or stale.version_id != keep.version_id:
                logger.info("Discarding stale sealed generation %s", stale.version_id)
                self.store.delete_generation(stale.version_id)

        if keep is not None:
            if self.config.worker.skip_waiting:
                current = self.activator.activate(keep)
            else:
                with self._waiting_lock:
                    self._waiting = keep

        self.evict()
        return current

    def start(self) -> None:
        """Recover state and start the background loop."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Cache worker already running")
            return

        current = self.recover()
        logger.info("Cache worker starting (current generation: %s)", current.version_id if current else "none")

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cache-worker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background loop gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping cache worker...")
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5.0)
        if self._thread.is_alive():
            logger.warning("Cache worker thread did not stop gracefully")
        self._thread = None
        logger.info("Cache worker stopped")

    def close(self) -> None:
        """Stop the worker and release its resources."""
        self.stop()
        self.interceptor.close()
        self.fetcher.close()
        self.store.close()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def waiting(self) -> CacheGeneration | None:
        """Sealed generation waiting for SKIP_WAITING, if any."""
        with self._waiting_lock:
            return self._waiting

    def handle(self, request: Request, cancel: threading.Event | None = None) -> Response:
        return self.interceptor.handle(request, cancel)

    def update(self, manifest: AssetManifest, timeout: float | None = None) -> CacheGeneration:
        """Install manifest and, with skip_waiting, activate it right away.

        Raises:
            InstallAborted: If the install failed; the current generation is untouched.
            TimeoutError: If timeout expired before the install finished.
        """
        generation = self.installer.install(manifest, timeout=timeout)

        if self.config.worker.skip_waiting:
            generation = self.activator.activate(generation)
            self.evict()
        elif self.activator.current is None or self.activator.current.version_id != generation.version_id:
            with self._waiting_lock:
                replaced, self._waiting = self._waiting, generation
            if replaced is not None and replaced.version_id != generation.version_id:
                # Never current, so no reader can hold it
                logger.info("Dropping waiting generation %s in favour of %s", replaced.version_id, generation.version_id)
                self.store.delete_generation(replaced.version_id)
            logger.info("Generation %s installed and waiting for activation", generation.version_id)
        return generation

    def skip_waiting(self) -> CacheGeneration | None:
        """Activate the waiting generation, if there is one."""
        with self._waiting_lock:
            waiting = self._waiting
            self._waiting = None
        if waiting is None:
            logger.debug("SKIP_WAITING received with no waiting generation")
            return None

        generation = self.activator.activate(waiting)
        self.evict()
        return generation

    def check_for_update(self) -> CacheGeneration | None:
        """Load the configured manifest and install it if its version is new.

        Returns:
            The resulting generation, or None if nothing changed.

        Raises:
            ManifestError: If the manifest cannot be loaded.
            InstallAborted: If the install failed.
        """
        if not self.config.manifest:
            return None

        manifest = load_manifest(self.config.manifest, fetcher=self.fetcher)
        known = {g.version_id for g in (self.activator.current, self.waiting) if g is not None}
        if manifest.version_id in known:
            logger.debug("Manifest %s unchanged", manifest.version_id)
            return None

        logger.info("New manifest version %s detected", manifest.version_id)
        return self.update(manifest)

    def evict(self) -> set[str]:
        """Evict superseded generations no reader holds."""
        removed = self.activator.evict_superseded()
        for version_id in removed:
            self.interceptor.forget(version_id)
        return removed

    def status(self) -> dict[str, Any]:
        """Summarize worker and store state."""
        current = self.activator.current
        waiting = self.waiting
        return {
            "current": current.version_id if current else None,
            "waiting": waiting.version_id if waiting else None,
            "generations": [
                {
                    "version_id": g.version_id,
                    "state": g.state.value,
                    "entries": len(self.store.keys(g.version_id)),
                    "created_at": g.created_at.isoformat(),
                    "sealed_at": g.sealed_at.isoformat() if g.sealed_at else None,
                    "readers": self.activator.readers(g.version_id),
                }
                for g in self.store.generations()
            ],
            "used_bytes": self.store.used_bytes(),
            "listeners": self.bridge.listener_count,
        }

    def _process_message(self, message: dict[str, Any]) -> None:
        message_type = message.get("type") if isinstance(message, dict) else None
        if message_type == SKIP_WAITING:
            self.skip_waiting()
        else:
            logger.warning("Ignoring unknown client message: %r", message)

    def _run(self) -> None:
        """Main worker loop - runs in background thread."""
        next_eviction = time.monotonic() + self.config.worker.eviction_interval
        update_interval = self.config.worker.update_interval
        next_update = time.monotonic() if update_interval else None

        while not self._stop_event.is_set():
            now = time.monotonic()
            deadlines = [next_eviction] + ([next_update] if next_update is not None else [])
            wait = max(0.0, min(min(deadlines) - now, LOOP_TICK_SECONDS))

            message = self.bridge.next_message(timeout=wait)
            try:
                if message is not None:
                    self._process_message(message)

                now = time.monotonic()
                if now >= next_eviction:
                    self.evict()
                    next_eviction = now + self.config.worker.eviction_interval
                if next_update is not None and now >= next_update:
                    next_update = now + update_interval
                    self.check_for_update()
            except (ActivationError, InstallAborted, ManifestError, StoreError) as e:
                logger.error("Cache worker error: %s", e)
            except Exception as e:
                logger.exception("Unexpected cache worker error: %s", e)
