"""Asset manifest parsing and building.

A manifest declares which resources must be present in a cache version:

    {
        "versionId": "1.0.3f2a9c1b",
        "entries": [
            {"key": "/index.html", "policy": "must-cache"},
            {"key": "/static/icons/icon-512.png", "policy": "opportunistic"}
        ]
    }

Manifests are produced at deploy time and only ever read by the cache core.
"""

import fnmatch
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .models import canonical_url

if TYPE_CHECKING:
    from .fetcher import Fetcher


class ManifestError(Exception):
    """Raised when a manifest is invalid or cannot be loaded."""

    pass


class FetchPolicy(Enum):
    """How a manifest entry participates in installation."""

    MUST_CACHE = "must-cache"
    OPPORTUNISTIC = "opportunistic"


@dataclass(frozen=True)
class ManifestEntry:
    """A single declared resource."""

    key: str
    policy: FetchPolicy = FetchPolicy.MUST_CACHE

    def __post_init__(self) -> None:
        if not self.key:
            raise ManifestError("Manifest entry key cannot be empty")


@dataclass(frozen=True)
class AssetManifest:
    """Declared resource set for one cache version."""

    version_id: str
    entries: tuple[ManifestEntry, ...] = ()

    def __post_init__(self) -> None:
        if not self.version_id:
            raise ManifestError("Manifest versionId cannot be empty")
        keys = [entry.key for entry in self.entries]
        duplicates = {key for key in keys if keys.count(key) > 1}
        if duplicates:
            raise ManifestError(f"Duplicate manifest keys: {sorted(duplicates)}")

    @property
    def must_cache(self) -> tuple[ManifestEntry, ...]:
        return tuple(e for e in self.entries if e.policy is FetchPolicy.MUST_CACHE)

    @property
    def opportunistic(self) -> tuple[ManifestEntry, ...]:
        return tuple(e for e in self.entries if e.policy is FetchPolicy.OPPORTUNISTIC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "versionId": self.version_id,
            "entries": [{"key": e.key, "policy": e.policy.value} for e in self.entries],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def _parse_entry(data: Any, index: int) -> ManifestEntry:
    """Parse a single manifest entry."""
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest entry {index} must be an object")

    key = data.get("key")
    if not isinstance(key, str) or not key:
        raise ManifestError(f"Manifest entry {index} is missing 'key'")
    try:
        canonical_url(key)
    except ValueError as e:
        raise ManifestError(f"Manifest entry {index} has an invalid key '{key}': {e}")

    raw_policy = data.get("policy", FetchPolicy.MUST_CACHE.value)
    try:
        policy = FetchPolicy(raw_policy)
    except ValueError:
        valid = [p.value for p in FetchPolicy]
        raise ManifestError(f"Invalid policy '{raw_policy}' for '{key}'. Must be one of: {valid}")

    return ManifestEntry(key=key, policy=policy)


def parse_manifest(data: Any) -> AssetManifest:
    """Build an AssetManifest from a decoded JSON document.

    Raises:
        ManifestError: If the document does not describe a valid manifest.
    """
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a JSON object")

    version_id = data.get("versionId")
    if not isinstance(version_id, str) or not version_id:
        raise ManifestError("Manifest is missing 'versionId'")

    entries_data = data.get("entries", [])
    if not isinstance(entries_data, list):
        raise ManifestError("'entries' must be a list")

    entries = tuple(_parse_entry(entry, i) for i, entry in enumerate(entries_data))
    return AssetManifest(version_id=version_id, entries=entries)


def loads_manifest(text: str | bytes) -> AssetManifest:
    """Parse a manifest from JSON text."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(f"Failed to parse manifest JSON: {e}")
    return parse_manifest(data)


def load_manifest(source: str, fetcher: "Fetcher | None" = None) -> AssetManifest:
    """Load a manifest from a file path or, given a fetcher, an http(s) URL.

    Raises:
        ManifestError: If the manifest cannot be read or is invalid.
    """
    if source.startswith(("http://", "https://")):
        if fetcher is None:
            raise ManifestError(f"Cannot load remote manifest without a fetcher: {source}")

        from .fetcher import NetworkError
        from .models import Request

        try:
            response = fetcher.fetch(Request(url=source, headers={"Accept": "application/json"}))
        except NetworkError as e:
            raise ManifestError(f"Failed to fetch manifest from {source}: {e}")
        if not response.ok:
            raise ManifestError(f"Manifest request to {source} returned HTTP {response.status}")
        return loads_manifest(response.body)

    path = Path(source)
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {source}")
    try:
        return loads_manifest(path.read_bytes())
    except OSError as e:
        raise ManifestError(f"Failed to read manifest file: {e}")


def compute_version_id(files: list[tuple[str, bytes]]) -> str:
    """Compute a version id from (key, content) pairs.

    The id changes whenever any key or any file content changes, so a new
    deploy never needs a manual version bump.
    """
    digest = hashlib.sha256()
    for key, content in sorted(files):
        digest.update(key.encode())
        digest.update(b"\0")
        digest.update(hashlib.sha256(content).digest())
    return f"1.0.{digest.hexdigest()[:8]}"


def build_manifest(
    root: str | Path,
    url_prefix: str = "/",
    opportunistic: tuple[str, ...] = (),
) -> AssetManifest:
    """Build a manifest covering every file under root.

    Args:
        root: Directory of static assets.
        url_prefix: URL path the directory is served under.
        opportunistic: Glob patterns (matched against the URL key) for
            entries that should not block sealing.

    Raises:
        ManifestError: If root is not a directory or holds no files.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise ManifestError(f"Asset directory not found: {root}")

    prefix = "/" + url_prefix.strip("/")
    if prefix != "/":
        prefix += "/"

    files: list[tuple[str, bytes]] = []
    for path in sorted(p for p in root_path.rglob("*") if p.is_file()):
        key = prefix + path.relative_to(root_path).as_posix()
        try:
            files.append((key, path.read_bytes()))
        except OSError as e:
            raise ManifestError(f"Failed to read asset {path}: {e}")

    if not files:
        raise ManifestError(f"No assets found under {root}")

    entries = tuple(
        ManifestEntry(
            key=key,
            policy=(
                FetchPolicy.OPPORTUNISTIC
                if any(fnmatch.fnmatch(key, pattern) for pattern in opportunistic)
                else FetchPolicy.MUST_CACHE
            ),
        )
        for key, _ in files
    )
    return AssetManifest(version_id=compute_version_id(files), entries=entries)
