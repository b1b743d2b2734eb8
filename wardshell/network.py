"""Network access to the live application."""

import logging
import threading

import requests

from .config import NetworkConfig
from .models import Request, Response

logger = logging.getLogger(__name__)

# Hop-by-hop headers are never forwarded in either direction.
# Content-Encoding/Length are dropped because requests hands back decoded bodies.
_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
        "content-encoding",
    }
)


class NetworkError(Exception):
    """Raised when a request cannot reach the network (offline, DNS, timeout)."""

    pass


def _filter_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in _HOP_BY_HOP_HEADERS}


class Fetcher:
    """Sends requests to the live application and snapshots the responses.

    Requests addressed to ``origin`` are sent to ``upstream`` instead, so the
    worker can sit in front of the application under the application's own
    public origin. Any other URL is fetched as-is.
    """

    def __init__(self, config: NetworkConfig, origin: str, upstream: str | None = None) -> None:
        self.config = config
        self.origin = origin.rstrip("/")
        self.upstream = (upstream or config.upstream or origin).rstrip("/")
        # requests.Session is not documented as thread-safe; keep one per thread.
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = self.config.user_agent
            self._local.session = session
        return session

    def _target_url(self, url: str) -> str:
        if url == self.origin or url.startswith(self.origin + "/") or url.startswith(self.origin + "?"):
            return self.upstream + url[len(self.origin):]
        return url

    def fetch(self, request: Request) -> Response:
        """Perform the request against the network.

        Any HTTP status is a successful fetch; only transport failures raise.

        Raises:
            NetworkError: If the request cannot be completed.
        """
        target = self._target_url(request.url)
        try:
            resp = self._session().request(
                request.method,
                target,
                headers=_filter_headers(request.headers),
                data=request.body,
                timeout=self.config.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            logger.debug("Network request failed for %s %s: %s", request.method, target, e)
            raise NetworkError(f"{request.method} {request.url} failed: {e}") from e

        logger.debug("%s %s -> %d", request.method, target, resp.status_code)
        return Response(
            status=resp.status_code,
            body=resp.content,
            headers=_filter_headers(dict(resp.headers)),
            status_text=resp.reason or "",
            url=request.url,
        )

    def __call__(self, request: Request) -> Response:
        return self.fetch(request)
