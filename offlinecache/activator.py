"""Promotion of sealed generations and eviction of superseded ones.

The current generation is held in a single attribute that activation
replaces wholesale, so readers see either the old or the new generation,
never a mix. Readers take a lease on the generation they resolved; a
superseded generation is only deleted once its lease count drops to zero.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .bridge import ClientBridge
from .models import CacheGeneration, GenerationState
from .store import CacheStore, StoreError

logger = logging.getLogger(__name__)


class ActivationError(Exception):
    """Raised when a generation cannot be made current."""

    pass


class _GenerationRef:
    """Reader count for one generation.

    Once retired, no new reader can enter; retiring only succeeds while no
    reader is inside.
    """

    def __init__(self, generation: CacheGeneration) -> None:
        self.generation = generation
        self._lock = threading.Lock()
        self._readers = 0
        self._retired = False

    def enter(self) -> bool:
        with self._lock:
            if self._retired:
                return False
            self._readers += 1
            return True

    def leave(self) -> None:
        with self._lock:
            self._readers -= 1

    def retire(self) -> bool:
        with self._lock:
            if self._readers > 0:
                return False
            self._retired = True
            return True

    @property
    def readers(self) -> int:
        with self._lock:
            return self._readers


class VersionActivator:
    """Owns the CurrentPointer: activation, leases and eviction."""

    def __init__(self, store: CacheStore, bridge: ClientBridge | None = None) -> None:
        self._store = store
        self._bridge = bridge
        # Serializes writers (activate, evict); readers never take it
        self._swap_lock = threading.Lock()
        self._refs: dict[str, _GenerationRef] = {}
        self._current_ref: _GenerationRef | None = None

    def load(self) -> CacheGeneration | None:
        """Restore the current generation from the durable pointer."""
        with self._swap_lock:
            version_id = self._store.current_pointer()
            if version_id is None:
                self._current_ref = None
                return None

            generation = self._store.get_generation(version_id)
            if generation is None or generation.state is not GenerationState.CURRENT:
                logger.error("Current pointer references missing generation %s; ignoring it", version_id)
                self._current_ref = None
                return None

            ref = _GenerationRef(generation)
            self._refs[version_id] = ref
            self._current_ref = ref
            logger.info("Restored current generation %s", version_id)
            return generation

    @property
    def current(self) -> CacheGeneration | None:
        ref = self._current_ref
        return ref.generation if ref is not None else None

    @contextmanager
    def lease(self) -> Iterator[CacheGeneration | None]:
        """Hold the current generation for the duration of a read.

        The current generation is resolved on entry, never cached across
        requests. Yields None when nothing has been activated yet.
        """
        ref = self._acquire()
        if ref is None:
            yield None
            return
        try:
            yield ref.generation
        finally:
            ref.leave()

    def _acquire(self) -> _GenerationRef | None:
        while True:
            ref = self._current_ref
            if ref is None:
                return None
            if ref.enter():
                return ref
            # Retired between the read and enter; the pointer has moved on

    def readers(self, version_id: str) -> int:
        """Return the number of in-progress reads holding version_id."""
        ref = self._refs.get(version_id)
        return ref.readers if ref is not None else 0

    def activate(self, generation: CacheGeneration) -> CacheGeneration:
        """Make a sealed generation current.

        Re-activating the current generation is a no-op.

        Returns:
            The generation, now in state CURRENT.

        Raises:
            ActivationError: If the generation is not sealed or the swap fails.
        """
        version_id = generation.version_id

        with self._swap_lock:
            current = self._current_ref
            if current is not None and current.generation.version_id == version_id:
                return current.generation

            stored = self._store.get_generation(version_id)
            if stored is None:
                raise ActivationError(f"Generation {version_id} does not exist")
            if stored.state is not GenerationState.SEALED:
                raise ActivationError(f"Generation {version_id} is {stored.state.value}, not sealed")

            try:
                previous = self._store.promote(version_id)
                promoted = self._store.get_generation(version_id)
            except StoreError as e:
                raise ActivationError(f"Failed to activate {version_id}: {e}") from e

            ref = _GenerationRef(promoted)
            self._refs[version_id] = ref
            self._current_ref = ref

        if previous is not None:
            logger.info("Activated generation %s (superseded %s)", version_id, previous)
        else:
            logger.info("Activated generation %s", version_id)

        if self._bridge is not None:
            self._bridge.notify(version_id)
        return promoted

    def evict_superseded(self) -> set[str]:
        """Delete superseded generations that no reader holds.

        Returns:
            Version ids that were evicted.
        """
        removed: set[str] = set()

        with self._swap_lock:
            for generation in self._store.generations():
                if generation.state is not GenerationState.SUPERSEDED:
                    continue

                version_id = generation.version_id
                ref = self._refs.get(version_id)
                if ref is not None and not ref.retire():
                    logger.debug("Deferring eviction of %s: %d reader(s)", version_id, ref.readers)
                    continue

                self._store.delete_generation(version_id)
                self._refs.pop(version_id, None)
                removed.add(version_id)
                logger.info("Evicted generation %s", version_id)

        return removed
