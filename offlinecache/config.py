"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import canonical_url


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Policies for requests that match no manifest entry.
DEFAULT_POLICIES = ("network-first", "cache-first", "network-only")


def _get_default_store_path() -> str:
    """Get the default store path using XDG-compliant directory.

    Returns ~/.local/share/offlinecache/cache.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "offlinecache" / "cache.db")


DEFAULT_STORE_PATH = _get_default_store_path()


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for the SQLite cache store."""

    path: str = DEFAULT_STORE_PATH
    max_bytes: int = 0  # 0 = no quota

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Store path cannot be empty")
        if self.max_bytes < 0:
            raise ConfigError(f"Store max_bytes must be non-negative (got {self.max_bytes})")


@dataclass(frozen=True)
class InstallerConfig:
    """Configuration for generation installs."""

    max_attempts: int = 3
    initial_backoff_ms: int = 200
    max_backoff_ms: int = 5000
    fetch_timeout: float = 10.0  # seconds per fetch attempt
    max_workers: int = 4

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(f"Installer max_attempts must be at least 1 (got {self.max_attempts})")
        if self.initial_backoff_ms < 0:
            raise ConfigError(f"Installer initial_backoff_ms must be non-negative (got {self.initial_backoff_ms})")
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ConfigError(
                f"Installer max_backoff_ms ({self.max_backoff_ms}) must be >= "
                f"initial_backoff_ms ({self.initial_backoff_ms})"
            )
        if self.fetch_timeout <= 0:
            raise ConfigError(f"Installer fetch_timeout must be positive (got {self.fetch_timeout})")
        if self.max_workers < 1:
            raise ConfigError(f"Installer max_workers must be at least 1 (got {self.max_workers})")


@dataclass(frozen=True)
class InterceptorConfig:
    """Configuration for request interception.

    - default_policy: Strategy for requests not in the manifest
      (network-first, cache-first or network-only).
    - backfill: Store fresh network responses as side entries of the current generation.
    - bypass: URL substrings that always go to the network uncached.
    - navigation_fallback: Cached keys served to page loads when offline, first hit wins.
    """

    network_timeout: float = 3.0
    default_policy: str = "network-first"
    backfill: bool = True
    bypass: tuple[str, ...] = ()
    navigation_fallback: tuple[str, ...] = ("/index.html", "/")
    offline_status: int = 503
    offline_body: str = "Offline - resource not available"
    offline_content_type: str = "text/plain; charset=utf-8"

    def __post_init__(self) -> None:
        if self.network_timeout <= 0:
            raise ConfigError(f"Interceptor network_timeout must be positive (got {self.network_timeout})")
        if self.default_policy not in DEFAULT_POLICIES:
            raise ConfigError(
                f"Invalid default_policy '{self.default_policy}'. Must be one of: {DEFAULT_POLICIES}"
            )
        if not (100 <= self.offline_status <= 599):
            raise ConfigError(f"Invalid offline_status: {self.offline_status} (must be 100-599)")


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the background worker loop."""

    skip_waiting: bool = True  # activate new generations as soon as they seal
    eviction_interval: int = 30  # seconds between eviction passes
    update_interval: int = 0  # seconds between manifest checks, 0 = never

    def __post_init__(self) -> None:
        if self.eviction_interval < 1:
            raise ConfigError(f"Worker eviction_interval must be at least 1 second (got {self.eviction_interval})")
        if self.update_interval < 0:
            raise ConfigError(f"Worker update_interval must be non-negative (got {self.update_interval})")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the caching proxy server."""

    enabled: bool = True
    port: int = 8080
    control_prefix: str = "/_offline"

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")
        if not self.control_prefix.startswith("/") or self.control_prefix == "/":
            raise ConfigError(f"Server control_prefix must be a path like '/_offline', got '{self.control_prefix}'")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    origin: str | None = None
    manifest: str | None = None
    store: StoreConfig = field(default_factory=StoreConfig)
    installer: InstallerConfig = field(default_factory=InstallerConfig)
    interceptor: InterceptorConfig = field(default_factory=InterceptorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def __post_init__(self) -> None:
        if self.origin is not None:
            if not self.origin.startswith(("http://", "https://")):
                raise ConfigError(f"Origin must start with http:// or https://, got '{self.origin}'")
            object.__setattr__(self, "origin", canonical_url(self.origin).rstrip("/"))


def _section(data: dict, name: str) -> dict | None:
    value = data.get(name)
    if value is not None and not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return value


def _parse_str_list(value: object, name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"'{name}' must be a list")
    return tuple(str(item) for item in value)


def _parse_store_config(data: dict | None) -> StoreConfig:
    """Parse store configuration section."""
    if data is None:
        return StoreConfig()

    return StoreConfig(
        path=str(Path(str(data.get("path", DEFAULT_STORE_PATH))).expanduser()),
        max_bytes=int(data.get("max_bytes", 0)),
    )


def _parse_installer_config(data: dict | None) -> InstallerConfig:
    """Parse installer configuration section."""
    if data is None:
        return InstallerConfig()

    return InstallerConfig(
        max_attempts=int(data.get("max_attempts", 3)),
        initial_backoff_ms=int(data.get("initial_backoff_ms", 200)),
        max_backoff_ms=int(data.get("max_backoff_ms", 5000)),
        fetch_timeout=float(data.get("fetch_timeout", 10.0)),
        max_workers=int(data.get("max_workers", 4)),
    )


def _parse_interceptor_config(data: dict | None) -> InterceptorConfig:
    """Parse interceptor configuration section."""
    if data is None:
        return InterceptorConfig()

    defaults = InterceptorConfig()
    bypass = data.get("bypass")
    navigation_fallback = data.get("navigation_fallback")

    return InterceptorConfig(
        network_timeout=float(data.get("network_timeout", defaults.network_timeout)),
        default_policy=str(data.get("default_policy", defaults.default_policy)),
        backfill=bool(data.get("backfill", defaults.backfill)),
        bypass=_parse_str_list(bypass, "interceptor.bypass") if bypass is not None else defaults.bypass,
        navigation_fallback=(
            _parse_str_list(navigation_fallback, "interceptor.navigation_fallback")
            if navigation_fallback is not None
            else defaults.navigation_fallback
        ),
        offline_status=int(data.get("offline_status", defaults.offline_status)),
        offline_body=str(data.get("offline_body", defaults.offline_body)),
        offline_content_type=str(data.get("offline_content_type", defaults.offline_content_type)),
    )


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        return WorkerConfig()

    return WorkerConfig(
        skip_waiting=bool(data.get("skip_waiting", True)),
        eviction_interval=int(data.get("eviction_interval", 30)),
        update_interval=int(data.get("update_interval", 0)),
    )


def _parse_server_config(data: dict | None) -> ServerConfig:
    """Parse server configuration section."""
    if data is None:
        return ServerConfig()

    return ServerConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
        control_prefix=str(data.get("control_prefix", "/_offline")).rstrip("/"),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - OFFLINECACHE_ORIGIN: Override origin
    - OFFLINECACHE_MANIFEST: Override manifest
    - OFFLINECACHE_STORE_PATH: Override store.path
    - OFFLINECACHE_STORE_MAX_BYTES: Override store.max_bytes
    - OFFLINECACHE_SERVER_PORT: Override server.port
    - OFFLINECACHE_SERVER_ENABLED: Override server.enabled (true/false)
    """
    for section in ("store", "server"):
        if config_data.get(section) is None:
            config_data[section] = {}

    origin = os.environ.get("OFFLINECACHE_ORIGIN")
    if origin is not None:
        config_data["origin"] = origin

    manifest = os.environ.get("OFFLINECACHE_MANIFEST")
    if manifest is not None:
        config_data["manifest"] = manifest

    store_path = os.environ.get("OFFLINECACHE_STORE_PATH")
    if store_path is not None:
        config_data["store"]["path"] = store_path

    store_max_bytes = os.environ.get("OFFLINECACHE_STORE_MAX_BYTES")
    if store_max_bytes is not None:
        config_data["store"]["max_bytes"] = int(store_max_bytes)

    server_port = os.environ.get("OFFLINECACHE_SERVER_PORT")
    if server_port is not None:
        config_data["server"]["port"] = int(server_port)

    server_enabled = os.environ.get("OFFLINECACHE_SERVER_ENABLED")
    if server_enabled is not None:
        config_data["server"]["enabled"] = server_enabled.lower() in ("true", "1", "yes")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)

        origin = data.get("origin")
        manifest = data.get("manifest")

        return Config(
            origin=str(origin) if origin is not None else None,
            manifest=str(manifest) if manifest is not None else None,
            store=_parse_store_config(_section(data, "store")),
            installer=_parse_installer_config(_section(data, "installer")),
            interceptor=_parse_interceptor_config(_section(data, "interceptor")),
            worker=_parse_worker_config(_section(data, "worker")),
            server=_parse_server_config(_section(data, "server")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
