"""Data models for cached requests, responses and generations."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from urllib.parse import urljoin, urlsplit, urlunsplit


class GenerationState(Enum):
    """Lifecycle state of a cache generation."""

    NONE = "none"
    INSTALLING = "installing"
    SEALED = "sealed"
    CURRENT = "current"
    SUPERSEDED = "superseded"
    EVICTED = "evicted"


# Transitions the store accepts. EVICTED is reached by deleting the row.
ALLOWED_TRANSITIONS: dict[GenerationState, frozenset[GenerationState]] = {
    GenerationState.NONE: frozenset({GenerationState.INSTALLING}),
    GenerationState.INSTALLING: frozenset({GenerationState.SEALED}),
    GenerationState.SEALED: frozenset({GenerationState.CURRENT}),
    GenerationState.CURRENT: frozenset({GenerationState.SUPERSEDED}),
    GenerationState.SUPERSEDED: frozenset({GenerationState.EVICTED}),
    GenerationState.EVICTED: frozenset(),
}


def can_transition(current: GenerationState, target: GenerationState) -> bool:
    """Return True if a generation may move from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


class ResponseSource(Enum):
    """Where a served response came from."""

    NETWORK = "network"
    CACHE = "cache"
    FALLBACK = "fallback"


def canonical_url(url: str, origin: str | None = None) -> str:
    """Normalize a URL for use in a cache key.

    Relative URLs are resolved against origin when one is given. Scheme and
    host are lowercased, an empty path becomes "/", the query is kept and the
    fragment is dropped.
    """
    if origin:
        url = urljoin(origin.rstrip("/") + "/", url)
    parts = urlsplit(url)
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def request_key(method: str, url: str, origin: str | None = None) -> str:
    """Build the canonical cache key for a request (method + URL)."""
    return f"{method.upper()} {canonical_url(url, origin)}"


@dataclass(frozen=True)
class Request:
    """An outgoing request from a foreground context.

    Attributes:
        url: Absolute URL, or a path relative to the configured origin.
        method: HTTP method.
        headers: Request headers.
        mode: Fetch mode ("navigate" for page loads, "cors" otherwise).
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    mode: str = "cors"

    @property
    def is_navigation(self) -> bool:
        """Whether this request loads a page rather than a subresource."""
        if self.mode == "navigate":
            return True
        for name, value in self.headers.items():
            if name.lower() == "accept" and "text/html" in value:
                return True
        return False

    def key(self, origin: str | None = None) -> str:
        return request_key(self.method, self.url, origin)


@dataclass(frozen=True)
class Response:
    """A response snapshot, either fresh from the network or stored.

    Attributes:
        status: HTTP status code.
        headers: Response headers.
        body: Full response body.
        status_text: HTTP reason phrase.
        stored_at: When the snapshot was written to the store, None if never stored.
        source: Where this response came from.
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    status_text: str = ""
    stored_at: datetime | None = None
    source: ResponseSource = ResponseSource.NETWORK

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class CacheGeneration:
    """One snapshot of cached responses for one manifest version.

    Attributes:
        version_id: Opaque version identifier from the manifest.
        state: Current lifecycle state.
        sequence: Store-assigned deploy order; later deploys have larger values.
        created_at: When installation started.
        sealed_at: When installation completed, None while installing.
    """

    version_id: str
    state: GenerationState
    sequence: int
    created_at: datetime
    sealed_at: datetime | None = None


@dataclass(frozen=True)
class UpdateNotification:
    """Message telling foreground contexts a new generation is current."""

    version_id: str
    activated_at: datetime

    def to_message(self) -> dict[str, str]:
        return {"type": "update-ready", "versionId": self.version_id}
