"""Caching reverse proxy that runs the offline cache worker in front of the app."""

import hmac
import ipaddress
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import unquote

from .cache_storage import CacheStorage
from .config import ProxyConfig
from .models import Request, Response
from .network import Fetcher, NetworkError
from .notifications import ClientRegistry, NotificationCenter
from .worker import WorkerRegistration

logger = logging.getLogger(__name__)

CONTROL_PREFIX = "/__worker/"

# Largest request body accepted for forwarding or push delivery.
MAX_BODY_SIZE = 10 * 1024 * 1024  # 10MB

# Written by BaseHTTPRequestHandler or _send_response itself, never copied from upstream.
_SERVER_SET_HEADERS = frozenset({"content-length", "connection", "server", "date"})


class ProxyError(Exception):
    """Raised when the proxy server cannot be started."""
    pass


class BodyTooLarge(Exception):
    """Raised when a request body exceeds MAX_BODY_SIZE."""
    pass


class WorkerProxyHandler(BaseHTTPRequestHandler):
    """Dispatches every request to the active worker as a fetch event."""

    # Class-level references set by factory
    origin: str = ""
    registration: Optional[WorkerRegistration] = None
    fetcher: Optional[Fetcher] = None
    storage: Optional[CacheStorage] = None
    notifications: Optional[NotificationCenter] = None
    clients: Optional[ClientRegistry] = None
    control_token: Optional[str] = None  # Required for /__worker/ endpoints when set

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:
        self._handle()

    def do_HEAD(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        self._handle()

    def do_PUT(self) -> None:
        self._handle()

    def do_PATCH(self) -> None:
        self._handle()

    def do_DELETE(self) -> None:
        self._handle()

    def do_OPTIONS(self) -> None:
        self._handle()

    def _handle(self) -> None:
        try:
            if self.path.startswith(CONTROL_PREFIX):
                self._handle_control()
            else:
                self._handle_fetch()
        except BodyTooLarge as e:
            logger.warning("Rejected %s %s: %s", self.command, self.path, e)
            self._send_error_json(413, "Request body too large")
        except Exception as e:
            logger.exception("Error handling %s %s: %s", self.command, self.path, e)
            self._send_error_json(500, "Internal server error")

    def _read_body(self) -> bytes | None:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return None
        if length > MAX_BODY_SIZE:
            raise BodyTooLarge(f"Request body too large ({length} bytes)")
        return self.rfile.read(length)

    def _fetch_mode(self) -> str:
        mode = self.headers.get("Sec-Fetch-Mode")
        if mode:
            return mode
        if self.command == "GET" and "text/html" in self.headers.get("Accept", ""):
            return "navigate"
        return "no-cors"

    def _build_request(self) -> Request:
        # Absolute-form targets are allowed; foreign origins are refused in _handle_fetch.
        if self.path.startswith(("http://", "https://")):
            url = self.path
        else:
            url = self.origin + self.path
        return Request(
            url=url,
            method=self.command,
            mode=self._fetch_mode(),
            headers={k: v for k, v in self.headers.items()},
            body=self._read_body(),
        )

    def _track_client(self, request: Request) -> None:
        if self.clients is None or not request.is_navigation or request.origin != self.origin:
            return
        client_id = self.headers.get("X-Client-Id") or (
            f"{self.client_address[0]}|{self.headers.get('User-Agent', '')}"
        )
        self.clients.track(client_id, request.url)

    def _handle_fetch(self) -> None:
        request = self._build_request()
        if request.origin != self.origin:
            # Only the application's own origin is served; this is not a forward proxy.
            logger.warning("Refused request for foreign origin %s from %s", request.origin, self.address_string())
            self._send_error_json(403, "Only requests for the application origin are served")
            return
        self._track_client(request)

        response: Response | None = None
        worker = self.registration.active if self.registration is not None else None
        if worker is not None:
            response = worker.handle_fetch(request).result()

        if response is None:
            # Not intercepted: plain pass-through to the network.
            if self.fetcher is None:
                self._send_error_json(503, "No upstream configured")
                return
            try:
                response = self.fetcher.fetch(request)
            except NetworkError as e:
                logger.warning("Upstream unavailable for %s %s: %s", request.method, request.url, e)
                self._send_error_json(502, "Bad gateway")
                return

        if response.is_error:
            self._send_error_json(502, "Bad gateway")
            return

        self._send_response(response)

    def _send_response(self, response: Response) -> None:
        self.send_response(response.status, response.status_text or None)
        for key, value in response.headers.items():
            if key.lower() in _SERVER_SET_HEADERS:
                continue
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    # Control endpoints

    def _is_loopback_client(self) -> bool:
        try:
            address = ipaddress.ip_address(self.client_address[0])
        except ValueError:
            return False
        if address.version == 6 and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        return address.is_loopback

    def _control_authorized(self) -> bool:
        """Check access to the control endpoints, sending the error response if denied.

        With control_token configured, an Authorization header with
        'Bearer <token>' is required. Without one, only loopback clients
        are allowed.
        """
        if self.control_token is None:
            if self._is_loopback_client():
                return True
            logger.warning("Control request blocked from non-local client %s", self.address_string())
            self._send_error_json(403, "Control endpoints are only available locally")
            return False

        auth_header = self.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            self._send_error_json(401, "Authorization required: Bearer token expected")
            return False
        provided_token = auth_header[7:]  # Strip "Bearer "
        if not hmac.compare_digest(provided_token.encode(), self.control_token.encode()):
            logger.warning("Invalid control token attempt from %s", self.address_string())
            self._send_error_json(403, "Invalid control token")
            return False
        return True

    def _handle_control(self) -> None:
        if not self._control_authorized():
            return

        path =self.path.split("?", 1)[0][len(CONTROL_PREFIX):].strip("/")
        parts = path.split("/") if path else []

        if self.command == "GET" and parts == ["status"]:
            self._handle_status()
        elif self.command == "GET" and parts == ["notifications"]:
            self._handle_notifications()
        elif self.command == "GET" and parts == ["clients"]:
            self._handle_clients()
        elif self.command == "POST" and parts == ["push"]:
            self._handle_push()
        elif self.command == "POST" and len(parts) == 3 and parts[0] == "notifications":
            tag = unquote(parts[1])
            if parts[2] == "click":
                self._handle_notification_click(tag)
            elif parts[2] == "close":
                self._handle_notification_close(tag)
            else:
                self._send_error_json(404, "Not found")
        else:
            self._send_error_json(404, "Not found")

    def _handle_status(self) -> None:
        """Handle GET /__worker/status."""
        registration = self.registration
        data: Dict[str, Any] = {"active": None, "waiting": None, "caches": {}}
        if registration is not None:
            for slot in ("active", "waiting"):
                worker = getattr(registration, slot)
                if worker is not None:
                    data[slot] = {"cache_name": worker.cache_name, "state": worker.state.value}
        if self.storage is not None:
            data["caches"] = self.storage.entry_counts()
        self._send_json(200, data)

    def _handle_notifications(self) -> None:
        """Handle GET /__worker/notifications."""
        shown = self.notifications.get_notifications() if self.notifications is not None else []
        self._send_json(200, {"notifications": [n.to_dict() for n in shown], "count": len(shown)})

    def _handle_clients(self) -> None:
        """Handle GET /__worker/clients."""
        clients = self.clients.match_all(include_uncontrolled=True) if self.clients is not None else []
        self._send_json(200, {"clients": [c.to_dict() for c in clients]})

    def _active_worker_or_error(self):
        worker = self.registration.active if self.registration is not None else None
        if worker is None:
            self._send_error_json(503, "No active worker")
        return worker

    def _handle_push(self) -> None:
        """Handle POST /__worker/push - the request body is the push payload."""
        worker = self._active_worker_or_error()
        if worker is None:
            return
        notification = worker.push(self._read_body()).result()
        self._send_json(
            200,
            {
                "shown": notification is not None,
                "notification": notification.to_dict() if notification is not None else None,
            },
        )

    def _find_notification(self, tag: str):
        notification = self.notifications.get(tag) if self.notifications is not None else None
        if notification is None:
            self._send_error_json(404, f"Notification '{tag}' not found")
        return notification

    def _handle_notification_click(self, tag: str) -> None:
        """Handle POST /__worker/notifications/<tag>/click with optional {"action": ...}."""
        worker = self._active_worker_or_error()
        if worker is None:
            return
        body = self._read_body()
        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError:
            self._send_error_json(400, "Invalid JSON body")
            return
        if not isinstance(data, dict):
            self._send_error_json(400, "Body must be a JSON object")
            return

        notification = self._find_notification(tag)
        if notification is None:
            return

        worker.click(notification, str(data.get("action") or "")).result()
        clients = self.clients.match_all(include_uncontrolled=True) if self.clients is not None else []
        self._send_json(200, {"clicked": tag, "clients": [c.to_dict() for c in clients]})

    def _handle_notification_close(self, tag: str) -> None:
        """Handle POST /__worker/notifications/<tag>/close (user dismissed it)."""
        worker = self._active_worker_or_error()
        if worker is None:
            return
        notification = self._find_notification(tag)
        if notification is None:
            return
        notification.close()
        worker.close_notification(notification).result()
        self._send_json(200, {"closed": tag})


def _create_handler_class(
    origin: str,
    registration: WorkerRegistration,
    fetcher: Optional[Fetcher],
    storage: Optional[CacheStorage],
    notifications: Optional[NotificationCenter],
    clients: Optional[ClientRegistry],
    control_token: Optional[str] = None,
) -> type:
    """Create a handler class with the worker runtime bound."""

    class BoundProxyHandler(WorkerProxyHandler):
        pass

    BoundProxyHandler.origin = origin.rstrip("/")
    BoundProxyHandler.registration = registration
    BoundProxyHandler.fetcher = fetcher
    BoundProxyHandler.storage = storage
    BoundProxyHandler.notifications = notifications
    BoundProxyHandler.clients = clients
    BoundProxyHandler.control_token = control_token
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP server exposing the worker over plain HTTP."""

    def __init__(
        self,
        config: ProxyConfig,
        origin: str,
        registration: WorkerRegistration,
        fetcher: Optional[Fetcher] = None,
        storage: Optional[CacheStorage] = None,
        notifications: Optional[NotificationCenter] = None,
        clients: Optional[ClientRegistry] = None,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Proxy configuration.
            origin: Public origin of the application, used to build request URLs.
            registration: Holds the worker that handles fetch events.
            fetcher: Network access for requests the worker does not intercept.
            storage: Cache storage, reported by the status endpoint.
            notifications: Displayed notifications.
            clients: Open application windows.
        """
        self.config = config
        self.origin = origin
        self.registration = registration
        self.fetcher = fetcher
        self.storage = storage
        self.notifications = notifications
        self.clients = clients
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the proxy server in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(
                self.origin,
                self.registration,
                self.fetcher,
                self.storage,
                self.notifications,
                self.clients,
                self.config.control_token,
            )
            self._server = ThreadingHTTPServer(("", self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on port %d for %s", self.config.port, self.origin)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or wardshell is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
