"""Shared fixtures: fake network, cache storage and worker factory."""

import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from wardshell.cache_storage import CacheStorage, init_storage
from wardshell.config import NotificationConfig, WorkerConfig
from wardshell.models import Request, Response
from wardshell.network import NetworkError
from wardshell.notifications import ClientRegistry, NotificationCenter
from wardshell.worker import OfflineCacheWorker

ORIGIN = "https://ward.example.org"


class FakeNetwork:
    """Callable standing in for Fetcher.fetch.

    Unknown URLs answer 404. ``offline`` or ``failing`` make requests raise
    NetworkError. ``gate`` blocks every request until it is set.
    """

    def __init__(self) -> None:
        self.responses: dict[str, Response] = {}
        self.failing: set[str] = set()
        self.offline = False
        self.gate: threading.Event | None = None
        self.calls: list[Request] = []
        self._lock = threading.Lock()

    def serve(self, path: str, body: bytes = b"ok", status: int = 200, headers: dict | None = None) -> None:
        url = ORIGIN + path
        self.responses[url] = Response(
            status=status,
            body=body,
            headers=headers or {"Content-Type": "text/plain"},
            status_text="OK" if status == 200 else "",
            url=url,
        )

    def fail(self, path: str) -> None:
        self.failing.add(ORIGIN + path)

    def called_urls(self) -> list[str]:
        with self._lock:
            return [r.url for r in self.calls]

    def __call__(self, request: Request) -> Response:
        with self._lock:
            self.calls.append(request)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.offline or request.url in self.failing:
            raise NetworkError(f"{request.url}: connection refused")
        response = self.responses.get(request.url)
        if response is None:
            return Response(status=404, body=b"Not Found", status_text="Not Found", url=request.url)
        return response

    def fetch(self, request: Request) -> Response:
        return self(request)


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def storage(tmp_path: Path) -> Iterator[CacheStorage]:
    """Cache storage in a temporary database."""
    store = init_storage(str(tmp_path / "cache.db"))
    yield store
    store.close()


@pytest.fixture
def notifications() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture
def clients() -> ClientRegistry:
    return ClientRegistry()


@pytest.fixture
def make_worker(
    storage: CacheStorage,
    network: FakeNetwork,
    notifications: NotificationCenter,
    clients: ClientRegistry,
) -> Iterator[Callable[..., OfflineCacheWorker]]:
    """Factory for workers sharing the same storage, network and clients."""
    created: list[OfflineCacheWorker] = []

    def _make(cache_name: str = "liahonaap-v6", **overrides) -> OfflineCacheWorker:
        options = {
            "static_assets": ("/", "/manifest.json?v=6", "/favicon.svg"),
            "fallback_assets": ("/", "/manifest.json?v=6"),
        }
        options.update(overrides)
        worker = OfflineCacheWorker(
            WorkerConfig(cache_name=cache_name, origin=ORIGIN, **options),
            storage,
            network,
            notifications,
            clients,
            notification_config=NotificationConfig(),
        )
        created.append(worker)
        return worker

    yield _make

    for worker in created:
        worker.drain(timeout=5)
        worker.shutdown()


def get(path: str, mode: str = "no-cors", origin: str = ORIGIN) -> Request:
    """Build a GET request for a path on the given origin."""
    return Request(url=origin + path, mode=mode)
