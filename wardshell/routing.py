"""Request classification for the fetch handler."""

from enum import Enum

from .models import Request

# Extensions served from the build output that make up the app shell.
APP_SHELL_SUFFIXES = (".js", ".css", ".woff", ".woff2")

# Path fragments emitted by the bundler for hashed assets and chunks.
APP_SHELL_MARKERS = ("/assets/", "index-", "chunk-")


class RequestKind(Enum):
    """How the worker treats an intercepted request."""

    NON_GET = "non-get"
    CROSS_ORIGIN = "cross-origin"
    API = "api"
    APP_SHELL = "app-shell"
    CACHEABLE = "cacheable"

    @property
    def intercepted(self) -> bool:
        return self in (RequestKind.APP_SHELL, RequestKind.CACHEABLE)


def is_app_shell_path(path: str) -> bool:
    """Check whether a path belongs to the application shell."""
    if path == "/":
        return True
    if path.endswith(APP_SHELL_SUFFIXES):
        return True
    return any(marker in path for marker in APP_SHELL_MARKERS)


def classify_request(request: Request, origin: str, api_prefix: str = "/api/") -> RequestKind:
    """Classify a request. Filters apply in order: method, origin, API prefix.

    Args:
        request: The intercepted request.
        origin: The worker's own origin, e.g. "https://ward.example.org".
        api_prefix: Path prefix of the live backend API.
    """
    if request.method.upper() != "GET":
        return RequestKind.NON_GET
    if request.origin != origin.rstrip("/"):
        return RequestKind.CROSS_ORIGIN

    path = request.path
    if path.startswith(api_prefix):
        return RequestKind.API
    if is_app_shell_path(path):
        return RequestKind.APP_SHELL
    return RequestKind.CACHEABLE
