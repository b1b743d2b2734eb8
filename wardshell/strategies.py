"""Cache/network strategies used by the fetch handler.

Handles caching strategy:
- App shell (JS/CSS bundles, fonts): network-first by default, cache-first
  when configured.
- Everything else that is same-origin and not API: network-first, falling back
  to the cache, then the cached root document for navigations, then a 503.

Cache writes are background tasks: the response path never waits for them and
never sees their failures.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from time import monotonic
from typing import Any

from .cache_storage import CacheStore
from .models import Request, Response
from .network import NetworkError

logger = logging.getLogger(__name__)

FetchFunc = Callable[[Request], Response]

# Small pool: background work is cache puts and cache-first refreshes only.
DEFAULT_BACKGROUND_WORKERS = 2


class BackgroundTasks:
    """Fire-and-forget tasks whose failures are logged, never raised."""

    def __init__(self, max_workers: int = DEFAULT_BACKGROUND_WORKERS) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wardshell-bg")
        self._pending: set[Future] = set()
        self._keyed: dict[str, Future] = {}
        self._lock = threading.Lock()

    def spawn(self, fn: Callable[..., Any], *args: Any, description: str = "task", key: str | None = None) -> Future:
        """Run ``fn(*args)`` in the background and return its future.

        With a ``key``, a task still in flight for the same key is returned
        instead of starting another one.
        """
        with self._lock:
            if key is not None and key in self._keyed:
                return self._keyed[key]
            future = self._executor.submit(fn, *args)
            self._pending.add(future)
            if key is not None:
                self._keyed[key] = future

        def _finished(done: Future) -> None:
            if not done.cancelled():
                exc = done.exception()
                if exc is not None:
                    logger.warning("Background %s failed: %s", description, exc)
            with self._lock:
                self._pending.discard(done)
                if key is not None and self._keyed.get(key) is done:
                    del self._keyed[key]

        future.add_done_callback(_finished)
        return future

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until no background task is pending.

        Tasks spawned by other background tasks are waited for too.

        Returns:
            True if everything finished, False on timeout.
        """
        deadline = None if timeout is None else monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _store_in_background(request: Request, response: Response, store: CacheStore, background: BackgroundTasks) -> None:
    if response.status != 200:
        return
    background.spawn(store.put, request, response.clone(), description=f"cache put for {request.url}")


def network_first(
    request: Request,
    store: CacheStore,
    fetch: FetchFunc,
    background: BackgroundTasks,
) -> Response:
    """Always try the network; fall back to the exact cached entry.

    Returns Response.error() if the network fails and nothing is cached.
    """
    try:
        response = fetch(request)
    except NetworkError as e:
        cached = store.match(request)
        if cached is not None:
            logger.debug("Network failed for %s, serving cached copy: %s", request.url, e)
            return cached
        logger.info("Network failed for %s and nothing cached: %s", request.url, e)
        return Response.error()

    _store_in_background(request, response, store, background)
    return response


def _fetch_and_store(request: Request, store: CacheStore, fetch: FetchFunc, background: BackgroundTasks) -> Response:
    response = fetch(request)
    _store_in_background(request, response, store, background)
    return response


def cache_first(
    request: Request,
    store: CacheStore,
    fetch: FetchFunc,
    background: BackgroundTasks,
) -> Response:
    """Serve the cached entry immediately and refresh it from the network.

    The network request starts before the cache lookup. With a cached entry
    the response returns without waiting for the network; the refresh keeps
    running and stores a 200 for the next request. Without one, the network
    response is awaited, falling back to the cache if it fails.
    Only one refresh per URL is in flight at a time.
    """
    network = background.spawn(
        _fetch_and_store,
        request,
        store,
        fetch,
        background,
        description=f"refresh of {request.url}",
        key=request.url,
    )

    cached = store.match(request)
    if cached is not None:
        return cached

    try:
        return network.result()
    except NetworkError as e:
        cached = store.match(request)
        if cached is not None:
            return cached
        logger.info("Network failed for %s and nothing cached: %s", request.url, e)
        return Response.error()


def network_first_with_offline_fallback(
    request: Request,
    store: CacheStore,
    fetch: FetchFunc,
    background: BackgroundTasks,
    root: Request,
) -> Response:
    """Network-first for generic same-origin requests.

    On network failure: exact cached entry, then for navigations the cached
    root document, then (non-navigations only) a synthesized 503 "Offline".
    """
    try:
        response = fetch(request)
    except NetworkError as e:
        cached = store.match(request)
        if cached is not None:
            logger.debug("Network failed for %s, serving cached copy: %s", request.url, e)
            return cached
        if request.is_navigation:
            shell = store.match(root)
            if shell is not None:
                logger.debug("Network failed for navigation to %s, serving cached root", request.url)
                return shell
            logger.info("Network failed for navigation to %s and root is not cached", request.url)
            return Response.error()
        logger.info("Network failed for %s, returning offline placeholder: %s", request.url, e)
        return Response.offline()

    _store_in_background(request, response, store, background)
    return response
