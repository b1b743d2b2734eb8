"""wardshell - Offline app-shell cache and push notifications for the ward app."""

import argparse
import logging
import os
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


def _open_storage_or_exit(path: str):
    from .cache_storage import CacheError, init_storage

    try:
        return init_storage(path)
    except CacheError as e:
        logger.error("Cache storage error: %s", e)
        sys.exit(1)


def _build_worker(config, storage, fetcher, notifications, clients):
    from .worker import OfflineCacheWorker

    return OfflineCacheWorker(
        config.worker,
        storage,
        fetcher,
        notifications,
        clients,
        notification_config=config.notifications,
    )


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - register the worker and serve the proxy."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("wardshell %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .network import Fetcher
    from .notifications import ClientRegistry, NotificationCenter
    from .proxy import ProxyError, ProxyServer
    from .worker import InstallError, WorkerRegistration

    # 1. Load configuration
    config = _load_config_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)
    logger.info("Cache version %s for %s (upstream %s)", config.worker.cache_name, config.worker.origin, config.upstream)

    # 2. Open cache storage
    storage = _open_storage_or_exit(config.storage.path)
    logger.info("Cache storage opened at %s", config.storage.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Bring the worker online; without it requests are passed straight through
    fetcher = Fetcher(config.network, config.worker.origin, config.upstream)
    notifications = NotificationCenter()
    clients = ClientRegistry()
    registration = WorkerRegistration()

    try:
        registration.register(_build_worker(config, storage, fetcher, notifications, clients))
    except InstallError as e:
        logger.error("%s", e)
        logger.warning("Continuing without an active worker (requests pass through uncached)")

    # 5. Start proxy
    proxy: Optional[ProxyServer] = None

    try:
        if config.proxy.enabled:
            try:
                proxy = ProxyServer(
                    config.proxy,
                    config.worker.origin,
                    registration,
                    fetcher=fetcher,
                    storage=storage,
                    notifications=notifications,
                    clients=clients,
                )
                proxy.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)
        else:
            logger.warning("Proxy disabled; nothing to serve")

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        if proxy is not None:
            proxy.stop()

        registration.shutdown()

        storage.close()
        logger.info("Cache storage closed")

        logger.info("Shutdown complete")


def _cmd_warm(args: argparse.Namespace) -> None:
    """Execute the warm command - install and activate the worker once."""
    _setup_logging(args.verbose)

    from .network import Fetcher
    from .notifications import ClientRegistry, NotificationCenter
    from .worker import InstallError, WorkerRegistration

    config = _load_config_or_exit(args.config)
    storage = _open_storage_or_exit(config.storage.path)

    fetcher = Fetcher(config.network, config.worker.origin, config.upstream)
    registration = WorkerRegistration()
    worker = _build_worker(config, storage, fetcher, NotificationCenter(), ClientRegistry())

    try:
        registration.register(worker)
        store = storage.open(worker.cache_name)
        cached = store.keys()
        print(f"Cache '{worker.cache_name}' ready with {len(cached)} entr{'y' if len(cached) == 1 else 'ies'}:")
        for url in cached:
            print(f"  {url}")
    except InstallError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        registration.shutdown()
        storage.close()


def _cmd_caches(args: argparse.Namespace) -> None:
    """Execute the caches command - list cache stores, optionally purging stale ones."""
    from pathlib import Path

    config = _load_config_or_exit(args.config)

    if not Path(config.storage.path).exists():
        print(f"Error: Cache database not found at {config.storage.path}")
        sys.exit(1)

    storage = _open_storage_or_exit(config.storage.path)
    try:
        current = config.worker.cache_name
        counts = storage.entry_counts()

        if args.purge:
            stale = [name for name in counts if name != current]
            for name in stale:
                storage.delete(name)
            print(f"Deleted {len(stale)} stale cache(s).")
            counts = storage.entry_counts()

        if not counts:
            print("No caches.")
            return

        for name, entries in counts.items():
            marker = "*" if name == current else " "
            print(f"{marker} {name}: {entries} entr{'y' if entries == 1 else 'ies'}")
    finally:
        storage.close()


def _cmd_push(args: argparse.Namespace) -> None:
    """Execute the push command - deliver a push payload to a running proxy."""
    import json

    import requests

    payload: dict = {}
    if args.payload:
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            print(f"Error: payload is not valid JSON: {e}")
            sys.exit(1)
        if not isinstance(payload, dict):
            print("Error: payload must be a JSON object")
            sys.exit(1)
    for key in ("title", "body", "tag", "url"):
        value = getattr(args, key)
        if value is not None:
            payload[key] = value

    url = args.proxy_url.rstrip("/") + "/__worker/push"
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    try:
        response = requests.post(url, json=payload, headers=headers, timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        print(f"Error: push delivery failed: {e}")
        sys.exit(1)

    result = response.json()
    if result.get("shown"):
        print(f"Notification shown (tag={result['notification']['tag']})")
    else:
        print("Payload ignored, no notification shown")


def main() -> None:
    """Main entry point for the wardshell package."""
    parser = argparse.ArgumentParser(
        description="wardshell - Offline app-shell cache and push notifications for the ward app"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"wardshell {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the caching proxy (default)",
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

    # Warm subcommand
    warm_parser = subparsers.add_parser(
        "warm",
        help="Install and activate the current cache version",
    )
    warm_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    warm_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    warm_parser.set_defaults(func=_cmd_warm)

    # Caches subcommand
    caches_parser = subparsers.add_parser(
        "caches",
        help="List cache stores",
    )
    caches_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    caches_parser.add_argument(
        "--purge",
        action="store_true",
        help="Delete every cache store except the current version",
    )
    caches_parser.set_defaults(func=_cmd_caches)

    # Push subcommand
    push_parser = subparsers.add_parser(
        "push",
        help="Send a push payload to a running proxy",
    )
    push_parser.add_argument(
        "--proxy-url",
        default="http://localhost:8080",
        help="Base URL of the running proxy (default: http://localhost:8080)",
    )
    push_parser.add_argument(
        "--payload",
        help="Raw JSON payload",
    )
    push_parser.add_argument("--title", help="Notification title")
    push_parser.add_argument("--body", help="Notification body")
    push_parser.add_argument("--tag", help="Notification tag")
    push_parser.add_argument("--url", help="URL to open when the notification is clicked")
    push_parser.add_argument(
        "--token",
        default=os.environ.get("WARDSHELL_PROXY_CONTROL_TOKEN"),
        help="Control token of the proxy (default: $WARDSHELL_PROXY_CONTROL_TOKEN)",
    )
    push_parser.set_defaults(func=_cmd_push)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
