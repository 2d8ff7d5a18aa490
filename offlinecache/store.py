"""SQLite-backed storage for cache generations.

Storage is append-within-generation and delete-whole-generation only:
manifest entries are written while a generation is INSTALLING and never
overwritten afterwards. Best-effort backfill responses live in a separate
side table that belongs to the same generation and is deleted with it.
"""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from .manifest import AssetManifest, ManifestError, loads_manifest
from .models import (
    CacheGeneration,
    GenerationState,
    Response,
    ResponseSource,
    can_transition,
)

logger = logging.getLogger(__name__)

# Metadata key holding the durable CurrentPointer value.
CURRENT_POINTER_KEY = "current_pointer"


class StoreError(Exception):
    """Raised when a cache store operation fails."""

    pass


class StorageFull(StoreError):
    """Raised when durable storage rejects a write for lack of space."""

    pass


class WriteError(StoreError):
    """Raised when a write is refused or fails for a reason other than space."""

    pass


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_generation(row: sqlite3.Row) -> CacheGeneration:
    return CacheGeneration(
        version_id=row["version_id"],
        state=GenerationState(row["state"]),
        sequence=row["sequence"],
        created_at=datetime.fromisoformat(row["created_at"]),
        sealed_at=_parse_dt(row["sealed_at"]),
    )


def _row_to_response(row: sqlite3.Row) -> Response:
    return Response(
        status=row["status"],
        status_text=row["status_text"] or "",
        headers=json.loads(row["headers"]),
        body=bytes(row["body"]),
        stored_at=datetime.fromisoformat(row["stored_at"]),
        source=ResponseSource.CACHE,
    )


def _is_disk_full(error: sqlite3.Error) -> bool:
    return getattr(error, "sqlite_errorcode", None) == sqlite3.SQLITE_FULL or "disk is full" in str(error)


class CacheStore:
    """Durable, versioned key-value store of response snapshots.

    Thread-safe: every operation holds the store lock. SQLite allows a single
    writer at a time, and installer threads, request handlers and the worker
    loop all share one connection.
    """

    def __init__(self, path: str, max_bytes: int = 0) -> None:
        """Open (and create if needed) the store at path.

        Args:
            path: SQLite database file, or ":memory:".
            max_bytes: Quota for stored bodies across all generations, 0 for none.

        Raises:
            StoreError: If the database cannot be opened or initialized.
        """
        self.path = path
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

        try:
            if path != ":memory:":
                parent_dir = Path(path).parent
                if not parent_dir.exists():
                    parent_dir.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._create_tables()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize cache store: {e}")
        except OSError as e:
            raise StoreError(f"Failed to create cache store directory: {e}")

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS generations (
                sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                version_id TEXT NOT NULL UNIQUE,
                state TEXT NOT NULL,
                manifest TEXT NOT NULL,
                created_at TEXT NOT NULL,
                sealed_at TEXT
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                version_id TEXT NOT NULL,
                key TEXT NOT NULL,
                status INTEGER NOT NULL,
                status_text TEXT,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                size INTEGER NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (version_id, key)
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS side_entries (
                version_id TEXT NOT NULL,
                key TEXT NOT NULL,
                status INTEGER NOT NULL,
                status_text TEXT,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                size INTEGER NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (version_id, key)
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS _metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -------------------------------------------------------------------------
    # Generations
    # -------------------------------------------------------------------------

    def create_generation(self, manifest: AssetManifest) -> CacheGeneration:
        """Register a new INSTALLING generation for manifest.

        Raises:
            WriteError: If a generation with this version id already exists.
        """
        now = datetime.now(UTC).isoformat()
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO generations (version_id, state, manifest, created_at) VALUES (?, ?, ?, ?)",
                    (manifest.version_id, GenerationState.INSTALLING.value, manifest.to_json(), now),
                )
                self._conn.commit()
                return self._get_generation_locked(manifest.version_id)
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise WriteError(f"Generation '{manifest.version_id}' already exists")
            except sqlite3.Error as e:
                self._conn.rollback()
                raise self._wrap_write_error(e, f"create generation '{manifest.version_id}'")

    def _get_generation_locked(self, version_id: str) -> CacheGeneration:
        row = self._conn.execute("SELECT * FROM generations WHERE version_id = ?", (version_id,)).fetchone()
        return _row_to_generation(row)

    def get_generation(self, version_id: str) -> CacheGeneration | None:
        """Return the generation with this version id, or None if absent."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM generations WHERE version_id = ?",
                    (version_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read generation '{version_id}': {e}")
        return _row_to_generation(row) if row else None

    def generations(self) -> list[CacheGeneration]:
        """Return every stored generation, oldest deploy first."""
        try:
            with self._lock:
                rows = self._conn.execute("SELECT * FROM generations ORDER BY sequence").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list generations: {e}")
        return [_row_to_generation(row) for row in rows]

    def list_generations(self) -> set[str]:
        """Return the version ids of every stored generation."""
        return {generation.version_id for generation in self.generations()}

    def get_manifest(self, version_id: str) -> AssetManifest | None:
        """Return the manifest a generation was installed from."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT manifest FROM generations WHERE version_id = ?",
                    (version_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read manifest for '{version_id}': {e}")
        if row is None:
            return None
        try:
            return loads_manifest(row["manifest"])
        except ManifestError as e:
            raise StoreError(f"Stored manifest for '{version_id}' is corrupt: {e}")

    def _set_state_locked(self, version_id: str, target: GenerationState, **extra: str) -> None:
        row = self._conn.execute("SELECT state FROM generations WHERE version_id = ?", (version_id,)).fetchone()
        if row is None:
            raise WriteError(f"Generation '{version_id}' does not exist")
        current = GenerationState(row["state"])
        if not can_transition(current, target):
            raise WriteError(f"Generation '{version_id}' cannot move from {current.value} to {target.value}")

        assignments = ", ".join(["state = ?"] + [f"{column} = ?" for column in extra])
        self._conn.execute(
            f"UPDATE generations SET {assignments} WHERE version_id = ?",
            (target.value, *extra.values(), version_id),
        )

    def seal_generation(self, version_id: str) -> CacheGeneration:
        """Mark an INSTALLING generation as SEALED.

        Raises:
            WriteError: If the generation is missing or not INSTALLING.
        """
        with self._lock:
            try:
                self._set_state_locked(
                    version_id,
                    GenerationState.SEALED,
                    sealed_at=datetime.now(UTC).isoformat(),
                )
                self._conn.commit()
                return self._get_generation_locked(version_id)
            except sqlite3.Error as e:
                self._conn.rollback()
                raise self._wrap_write_error(e, f"seal generation '{version_id}'")

    def promote(self, version_id: str) -> str | None:
        """Make a SEALED generation CURRENT in a single transaction.

        The previous CURRENT generation (if any) becomes SUPERSEDED and the
        durable CurrentPointer is updated, all or nothing.

        Returns:
            Version id of the generation that was superseded, or None.

        Raises:
            WriteError: If the generation is not SEALED or the write fails.
        """
        try:
            with self._lock:
                previous = self._get_metadata_locked(CURRENT_POINTER_KEY)
                try:
                    self._set_state_locked(version_id, GenerationState.CURRENT)
                    if previous is not None and previous != version_id:
                        self._set_state_locked(previous, GenerationState.SUPERSEDED)
                    self._set_metadata_locked(CURRENT_POINTER_KEY, version_id)
                    self._conn.commit()
                except (WriteError, sqlite3.Error):
                    self._conn.rollback()
                    raise
                return previous
        except sqlite3.Error as e:
            raise self._wrap_write_error(e, f"promote generation '{version_id}'")

    def delete_generation(self, version_id: str) -> None:
        """Delete a generation and every entry it holds."""
        with self._lock:
            try:
                self._conn.execute("DELETE FROM entries WHERE version_id = ?", (version_id,))
                self._conn.execute("DELETE FROM side_entries WHERE version_id = ?", (version_id,))
                self._conn.execute("DELETE FROM generations WHERE version_id = ?", (version_id,))
                if self._get_metadata_locked(CURRENT_POINTER_KEY) == version_id:
                    self._conn.execute("DELETE FROM _metadata WHERE key = ?", (CURRENT_POINTER_KEY,))
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"Failed to delete generation '{version_id}': {e}")

    def discard_incomplete(self) -> list[str]:
        """Delete generations left INSTALLING by an interrupted install.

        Returns:
            Version ids that were removed.
        """
        incomplete = [g.version_id for g in self.generations() if g.state is GenerationState.INSTALLING]
        for version_id in incomplete:
            logger.warning("Discarding incomplete generation %s", version_id)
            self.delete_generation(version_id)
        return incomplete

    def current_pointer(self) -> str | None:
        """Return the durable CurrentPointer value."""
        try:
            with self._lock:
                return self._get_metadata_locked(CURRENT_POINTER_KEY)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read current pointer: {e}")

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def put(self, version_id: str, key: str, response: Response) -> None:
        """Store a manifest entry in an INSTALLING generation.

        Raises:
            StorageFull: If the quota or the disk is exhausted.
            WriteError: If the generation is not INSTALLING or the key exists.
        """
        with self._lock:
            state = self._entry_target_state_locked(version_id)
            if state is not GenerationState.INSTALLING:
                raise WriteError(f"Generation '{version_id}' is sealed; entries are immutable")
            self._insert_locked("entries", version_id, key, response, replace=False)

    def put_side(self, version_id: str, key: str, response: Response) -> None:
        """Store a best-effort backfill entry for a sealed generation.

        Side entries never shadow manifest entries and may be replaced.

        Raises:
            StorageFull: If the quota or the disk is exhausted.
            WriteError: If the generation is not SEALED or CURRENT.
        """
        with self._lock:
            state = self._entry_target_state_locked(version_id)
            if state not in (GenerationState.SEALED, GenerationState.CURRENT):
                raise WriteError(f"Generation '{version_id}' does not accept backfill entries")
            self._insert_locked("side_entries", version_id, key, response, replace=True)

    def _entry_target_state_locked(self, version_id: str) -> GenerationState:
        try:
            row = self._conn.execute(
                "SELECT state FROM generations WHERE version_id = ?",
                (version_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read generation '{version_id}': {e}")
        if row is None:
            raise WriteError(f"Generation '{version_id}' does not exist")
        return GenerationState(row["state"])

    def _insert_locked(self, table: str, version_id: str, key: str, response: Response, replace: bool) -> None:
        size = len(response.body)
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        try:
            if self.max_bytes and self._used_bytes_locked() + size > self.max_bytes:
                raise StorageFull(f"Storing '{key}' ({size} bytes) would exceed the {self.max_bytes} byte quota")

            self._conn.execute(
                f"""
                {verb} INTO {table}
                (version_id, key, status, status_text, headers, body, size, stored_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version_id,
                    key,
                    response.status,
                    response.status_text,
                    json.dumps(response.headers),
                    sqlite3.Binary(response.body),
                    size,
                    datetime.now(UTC).isoformat(),
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError:
            self._conn.rollback()
            raise WriteError(f"Entry '{key}' already exists in generation '{version_id}'")
        except sqlite3.Error as e:
            self._conn.rollback()
            raise self._wrap_write_error(e, f"store '{key}'")

    def get(self, version_id: str, key: str) -> Response | None:
        """Return the stored response for key, or None if absent.

        Manifest entries take precedence over backfill entries.
        """
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM entries WHERE version_id = ? AND key = ?",
                    (version_id, key),
                ).fetchone()
                if row is None:
                    row = self._conn.execute(
                        "SELECT * FROM side_entries WHERE version_id = ? AND key = ?",
                        (version_id, key),
                    ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read '{key}' from '{version_id}': {e}")
        return _row_to_response(row) if row else None

    def keys(self, version_id: str) -> set[str]:
        """Return the manifest entry keys stored for a generation."""
        try:
            with self._lock:
                rows = self._conn.execute("SELECT key FROM entries WHERE version_id = ?", (version_id,)).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list keys for '{version_id}': {e}")
        return {row["key"] for row in rows}

    def used_bytes(self) -> int:
        """Return the total body size stored across all generations."""
        try:
            with self._lock:
                return self._used_bytes_locked()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to compute store size: {e}")

    def _used_bytes_locked(self) -> int:
        row = self._conn.execute("""
            SELECT
                (SELECT COALESCE(SUM(size), 0) FROM entries) +
                (SELECT COALESCE(SUM(size), 0) FROM side_entries)
        """).fetchone()
        return int(row[0])

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def _get_metadata_locked(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM _metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_metadata_locked(self, key: str, value: str) -> None:
        self._conn.execute("INSERT OR REPLACE INTO _metadata (key, value) VALUES (?, ?)", (key, value))

    @staticmethod
    def _wrap_write_error(error: sqlite3.Error, action: str) -> StoreError:
        if _is_disk_full(error):
            return StorageFull(f"Disk full while trying to {action}: {error}")
        return WriteError(f"Failed to {action}: {error}")
