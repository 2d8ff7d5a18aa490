"""offlinecache - Versioned offline cache for web assets."""

import argparse
import json
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_worker_or_exit(config):
    from .store import StoreError
    from .worker import CacheWorker

    try:
        return CacheWorker(config)
    except StoreError as e:
        logger.error("Cache store error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the cache worker and proxy server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("offlinecache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, ProxyServer
    from .installer import InstallAborted
    from .manifest import ManifestError

    # 1. Load configuration
    config = _load_config_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)

    # 2. Open store and recover durable state
    worker = _open_worker_or_exit(config)
    logger.info("Cache store opened at %s", config.store.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start components
    proxy: Optional[ProxyServer] = None

    try:
        worker.start()

        if config.manifest:
            try:
                worker.check_for_update()
            except (InstallAborted, ManifestError) as e:
                logger.error("Initial install failed: %s", e)
                logger.warning("Continuing with current generation")

        if config.server.enabled:
            try:
                proxy = ProxyServer(config.server, worker)
                proxy.start()
            except ApiError as e:
                logger.error("Failed to start proxy server: %s", e)
                logger.warning("Continuing without proxy server")
                proxy = None

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        if proxy is not None:
            proxy.stop()

        worker.close()
        logger.info("Cache store closed")

        logger.info("Shutdown complete")


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - install, activate and clean up a manifest version."""
    _setup_logging(args.verbose)

    from .activator import ActivationError
    from .installer import InstallAborted
    from .manifest import ManifestError, load_manifest
    from .store import StoreError

    config = _load_config_or_exit(args.config)
    source = args.manifest or config.manifest
    if not source:
        logger.error("No manifest given and none configured")
        sys.exit(1)

    worker = _open_worker_or_exit(config)
    try:
        worker.recover()
        manifest = load_manifest(source, fetcher=worker.fetcher)
        generation = worker.installer.install(manifest)
        generation = worker.activator.activate(generation)
        evicted = worker.evict()
        print(f"Current generation: {generation.version_id}")
        if evicted:
            print(f"Evicted: {', '.join(sorted(evicted))}")
    except ManifestError as e:
        logger.error("Manifest error: %s", e)
        sys.exit(1)
    except InstallAborted as e:
        logger.error("Install aborted: %s", e)
        sys.exit(1)
    except ActivationError as e:
        logger.error("Activation failed: %s", e)
        sys.exit(1)
    except StoreError as e:
        logger.error("Cache store error: %s", e)
        sys.exit(1)
    finally:
        worker.close()


def _cmd_status(args: argparse.Namespace) -> None:
    """Execute the status command - print generations and the current pointer."""
    config = _load_config_or_exit(args.config)
    worker = _open_worker_or_exit(config)
    try:
        worker.activator.load()
        status = worker.status()
    finally:
        worker.close()

    if args.json:
        print(json.dumps(status, indent=2))
        return

    print(f"Current: {status['current'] or '(none)'}")
    if not status["generations"]:
        print("No generations stored.")
    for generation in status["generations"]:
        print(f"  {generation['version_id']:<24} {generation['state']:<11} {generation['entries']} entries")
    print(f"Stored bytes: {status['used_bytes']}")


def _cmd_evict(args: argparse.Namespace) -> None:
    """Execute the evict command - delete superseded generations."""
    from .store import StoreError

    config = _load_config_or_exit(args.config)
    worker = _open_worker_or_exit(config)
    try:
        worker.store.discard_incomplete()
        worker.activator.load()
        evicted = worker.evict()
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        worker.close()

    if evicted:
        print(f"Evicted {len(evicted)} generation(s): {', '.join(sorted(evicted))}")
    else:
        print("Nothing to evict.")


def _cmd_manifest(args: argparse.Namespace) -> None:
    """Execute the manifest command - build a manifest from a static directory."""
    from pathlib import Path

    from .manifest import ManifestError, build_manifest

    try:
        manifest = build_manifest(args.root, url_prefix=args.prefix, opportunistic=tuple(args.opportunistic))
    except ManifestError as e:
        print(f"Error: {e}")
        sys.exit(1)

    text = manifest.to_json() + "\n"
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        print(f"Wrote manifest {manifest.version_id} ({len(manifest.entries)} entries) to {args.output}")
    else:
        sys.stdout.write(text)


def main() -> None:
    """Main entry point for the offlinecache package."""
    parser = argparse.ArgumentParser(
        description="offlinecache - Versioned offline cache for web assets"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"offlinecache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the cache worker and proxy server (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Install subcommand
    install_parser = subparsers.add_parser(
        "install",
        help="Install a manifest version and make it current",
    )
    install_parser.add_argument(
        "manifest",
        nargs="?",
        help="Manifest file or URL (default: manifest from configuration)",
    )
    install_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    install_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    install_parser.set_defaults(func=_cmd_install)

    # Status subcommand
    status_parser = subparsers.add_parser(
        "status",
        help="Show stored generations and the current version",
    )
    status_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Print status as JSON",
    )
    status_parser.set_defaults(func=_cmd_status)

    # Evict subcommand
    evict_parser = subparsers.add_parser(
        "evict",
        help="Delete superseded generations",
    )
    evict_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    evict_parser.set_defaults(func=_cmd_evict)

    # Manifest subcommand
    manifest_parser = subparsers.add_parser(
        "manifest",
        help="Build a manifest from a directory of static assets",
    )
    manifest_parser.add_argument(
        "root",
        help="Directory of static assets",
    )
    manifest_parser.add_argument(
        "--prefix",
        default="/",
        help="URL path the directory is served under (default: /)",
    )
    manifest_parser.add_argument(
        "--opportunistic",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Glob for entries that must not block installation (repeatable)",
    )
    manifest_parser.add_argument(
        "-o", "--output",
        help="Write the manifest to this file instead of stdout",
    )
    manifest_parser.set_defaults(func=_cmd_manifest)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
