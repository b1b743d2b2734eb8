"""Offline cache worker: one state machine reacting to lifecycle events.

Each event kind has exactly one handler. ``dispatch`` runs the handler on the
worker's executor and returns its future; the caller awaits that future
before treating the phase as complete (install must settle before activate).
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .cache_storage import CacheError, CacheStorage, CacheStore
from .config import STRATEGY_CACHE_FIRST, NotificationConfig, WorkerConfig
from .models import Request, Response
from .network import NetworkError
from .notifications import (
    ClientRegistry,
    Notification,
    NotificationCenter,
    build_notification,
    resolve_url,
)
from .routing import RequestKind, classify_request
from .strategies import (
    BackgroundTasks,
    cache_first,
    network_first,
    network_first_with_offline_fallback,
)

logger = logging.getLogger(__name__)


class InstallError(Exception):
    """Raised when neither the static assets nor the fallback set could be cached."""

    pass


class WorkerState(Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class EventKind(Enum):
    INSTALL = "install"
    ACTIVATE = "activate"
    FETCH = "fetch"
    PUSH = "push"
    NOTIFICATION_CLICK = "notificationclick"
    NOTIFICATION_CLOSE = "notificationclose"


@dataclass(frozen=True)
class InstallEvent:
    kind = EventKind.INSTALL


@dataclass(frozen=True)
class ActivateEvent:
    kind = EventKind.ACTIVATE


@dataclass(frozen=True)
class FetchEvent:
    request: Request
    kind = EventKind.FETCH


@dataclass(frozen=True)
class PushEvent:
    data: bytes | None = None
    kind = EventKind.PUSH


@dataclass(frozen=True)
class NotificationClickEvent:
    notification: Notification
    action: str = ""
    kind = EventKind.NOTIFICATION_CLICK


@dataclass(frozen=True)
class NotificationCloseEvent:
    notification: Notification
    kind = EventKind.NOTIFICATION_CLOSE


WorkerEvent = InstallEvent | ActivateEvent | FetchEvent | PushEvent | NotificationClickEvent | NotificationCloseEvent


class OfflineCacheWorker:
    """Versioned app-shell cache, offline fallback and push notification handler."""

    def __init__(
        self,
        config: WorkerConfig,
        storage: CacheStorage,
        fetch: Callable[[Request], Response],
        notifications: NotificationCenter,
        clients: ClientRegistry,
        notification_config: NotificationConfig | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Worker configuration; ``cache_name`` is this worker's version.
            storage: Cache storage shared by every worker version.
            fetch: Network fetch function, raising NetworkError on transport failure.
            notifications: Where notifications are displayed.
            clients: Open application windows.
            notification_config: Defaults for notifications built from push payloads.
        """
        self.config = config
        self.storage = storage
        self.fetch = fetch
        self.notifications = notifications
        self.clients = clients
        self.notification_config = notification_config or NotificationConfig()

        self.state = WorkerState.PARSED
        self.skip_waiting_requested = False
        self._origin = config.normalized_origin
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="wardshell-worker")
        self._background = BackgroundTasks()
        self._handlers: dict[EventKind, Callable[[Any], Any]] = {
            EventKind.INSTALL: self._on_install,
            EventKind.ACTIVATE: self._on_activate,
            EventKind.FETCH: self._on_fetch,
            EventKind.PUSH: self._on_push,
            EventKind.NOTIFICATION_CLICK: self._on_notification_click,
            EventKind.NOTIFICATION_CLOSE: self._on_notification_close,
        }

    def __repr__(self) -> str:
        return f"OfflineCacheWorker({self.cache_name!r}, state={self.state.value})"

    @property
    def cache_name(self) -> str:
        return self.config.cache_name

    def dispatch(self, event: WorkerEvent) -> Future:
        """Run the handler for this event and return the future it settles."""
        handler = self._handlers[event.kind]
        return self._executor.submit(handler, event)

    # Convenience wrappers returning the handler future.

    def install(self) -> Future:
        return self.dispatch(InstallEvent())

    def activate(self) -> Future:
        return self.dispatch(ActivateEvent())

    def handle_fetch(self, request: Request) -> Future:
        return self.dispatch(FetchEvent(request))

    def push(self, data: bytes | str | None) -> Future:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self.dispatch(PushEvent(data))

    def click(self, notification: Notification, action: str = "") -> Future:
        return self.dispatch(NotificationClickEvent(notification, action))

    def close_notification(self, notification: Notification) -> Future:
        return self.dispatch(NotificationCloseEvent(notification))

    def skip_waiting(self) -> None:
        """Ask to be activated without waiting for old-version windows to close."""
        self.skip_waiting_requested = True

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for background cache writes to finish."""
        return self._background.drain(timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._background.shutdown(wait=wait)

    def _request(self, path: str, mode: str = "no-cors") -> Request:
        return Request(url=resolve_url(self._origin, path), mode=mode)

    def _store(self) -> CacheStore:
        return self.storage.open(self.cache_name)

    # Lifecycle

    def _on_install(self, event: InstallEvent) -> None:
        self.state = WorkerState.INSTALLING
        logger.info("Installing %s", self.cache_name)

        try:
            store = self._store()
            try:
                store.add_all([self._request(p) for p in self.config.static_assets], self.fetch)
            except (CacheError, NetworkError) as e:
                logger.warning("Some static assets failed to cache: %s", e)
                store.add_all([self._request(p) for p in self.config.fallback_assets], self.fetch)
        except (CacheError, NetworkError) as e:
            self.state = WorkerState.REDUNDANT
            logger.error("Install of %s failed: %s", self.cache_name, e)
            raise InstallError(f"Install of {self.cache_name} failed: {e}") from e

        self.state = WorkerState.INSTALLED
        self.skip_waiting()
        logger.info("Installed %s", self.cache_name)

    def _on_activate(self, event: ActivateEvent) -> list[str]:
        self.state = WorkerState.ACTIVATING
        logger.info("Activating %s", self.cache_name)

        deleted = []
        for name in self.storage.keys():
            if name != self.cache_name:
                logger.info("Deleting old cache: %s", name)
                self.storage.delete(name)
                deleted.append(name)

        claimed = self.clients.claim(self.cache_name)
        self.state = WorkerState.ACTIVATED
        logger.info("Activated %s (claimed %d client(s))", self.cache_name, claimed)
        return deleted

    # Fetch

    def classify(self, request: Request) -> RequestKind:
        return classify_request(request, self._origin, self.config.api_prefix)

    def _on_fetch(self, event: FetchEvent) -> Response | None:
        """Return the response to use, or None to leave the request to default handling."""
        request = event.request
        kind = self.classify(request)
        if not kind.intercepted:
            logger.debug("Not intercepting %s %s (%s)", request.method, request.url, kind.value)
            return None

        store = self._store()
        if kind is RequestKind.APP_SHELL:
            if self.config.app_shell_strategy == STRATEGY_CACHE_FIRST:
                return cache_first(request, store, self.fetch, self._background)
            return network_first(request, store, self.fetch, self._background)

        return network_first_with_offline_fallback(
            request, store, self.fetch, self._background, root=self._request("/")
        )

    # Notifications

    def _on_push(self, event: PushEvent) -> Notification | None:
        descriptor = build_notification(event.data, self.notification_config)
        if descriptor is None:
            return None
        return self.notifications.show(descriptor)

    def _on_notification_click(self, event: NotificationClickEvent) -> None:
        notification = event.notification
        notification.close()

        if event.action == "close":
            return

        target = notification.data.get("url") or "/"

        for client in self.clients.match_all(include_uncontrolled=True):
            if self._origin in client.url:
                self.clients.focus(client)
                if target != "/":
                    self.clients.navigate(client, resolve_url(self._origin, target))
                return

        self.clients.open_window(resolve_url(self._origin, target))

    def _on_notification_close(self, event: NotificationCloseEvent) -> None:
        logger.info("Notification closed: %s", event.notification.tag)


class WorkerRegistration:
    """Holds the active worker and brings new versions online.

    A new version only replaces the active one once its install has settled
    successfully; a failed install leaves the previous version in charge.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active: OfflineCacheWorker | None = None
        self.waiting: OfflineCacheWorker | None = None

    def register(self, worker: OfflineCacheWorker, timeout: float | None = None) -> bool:
        """Install ``worker`` and activate it if it asked to skip waiting.

        Returns:
            True if the worker is now active, False if it is waiting.

        Raises:
            InstallError: If install failed; the previous worker stays active.
        """
        worker.install().result(timeout=timeout)

        if worker.skip_waiting_requested or self.active is None:
            self._promote(worker, timeout)
            return True

        with self._lock:
            previous_waiting, self.waiting = self.waiting, worker
        if previous_waiting is not None:
            previous_waiting.state = WorkerState.REDUNDANT
            previous_waiting.shutdown(wait=False)
        logger.info("%s installed and waiting", worker.cache_name)
        return False

    def activate_waiting(self, timeout: float | None = None) -> bool:
        """Activate the waiting worker, if any."""
        with self._lock:
            worker, self.waiting = self.waiting, None
        if worker is None:
            return False
        self._promote(worker, timeout)
        return True

    def _promote(self, worker: OfflineCacheWorker, timeout: float | None) -> None:
        worker.activate().result(timeout=timeout)
        with self._lock:
            previous, self.active = self.active, worker
        if previous is not None and previous is not worker:
            previous.state = WorkerState.REDUNDANT
            previous.drain(timeout=5)
            previous.shutdown(wait=False)

    def shutdown(self) -> None:
        with self._lock:
            workers = [w for w in (self.active, self.waiting) if w is not None]
            self.active = None
            self.waiting = None
        for worker in workers:
            worker.drain(timeout=5)
            worker.shutdown()
