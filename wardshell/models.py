"""Data models for intercepted requests, cached responses and notifications."""

from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import urlsplit


@dataclass(frozen=True)
class Request:
    """An HTTP request as seen by the worker.

    Attributes:
        url: Absolute request URL including the query string.
        method: HTTP method, upper case.
        mode: Fetch mode ("navigate" for top-level page loads, "no-cors" otherwise).
        headers: Request headers.
        body: Request body for non-GET requests, or None.
    """

    url: str
    method: str = "GET"
    mode: str = "no-cors"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"


@dataclass(frozen=True)
class Response:
    """A response snapshot, either from the network or from a cache store.

    Attributes:
        status: HTTP status code (0 for a network error response).
        body: Raw response body.
        headers: Response headers.
        status_text: Reason phrase.
        url: URL the response was produced for, if known.
    """

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    status_text: str = ""
    url: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_error(self) -> bool:
        return self.status == 0

    def clone(self) -> "Response":
        """Return an independent copy that can be stored while this one is returned."""
        return replace(self, headers=dict(self.headers))

    @classmethod
    def error(cls) -> "Response":
        """Network error response, returned when nothing can serve the request."""
        return cls(status=0, status_text="Network Error")

    @classmethod
    def offline(cls) -> "Response":
        """Synthesized placeholder for never-cached resources while offline."""
        return cls(
            status=503,
            body=b"Offline",
            headers={"Content-Type": "text/plain"},
            status_text="Service Unavailable",
        )


@dataclass(frozen=True)
class NotificationAction:
    """A button shown on a system notification."""

    action: str
    title: str

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action, "title": self.title}


@dataclass(frozen=True)
class NotificationDescriptor:
    """Everything needed to display one system notification.

    Attributes:
        title: Notification title.
        body: Notification text (may be empty).
        tag: De-duplication key; notifications sharing a tag replace each other.
        icon: Icon URL.
        badge: Badge URL.
        vibrate: Vibration pattern in milliseconds.
        renotify: Re-alert the user when replacing a notification with the same tag.
        require_interaction: Keep the notification visible until the user acts on it.
        actions: Action buttons.
        data: Opaque payload used on click (``url`` and ``notificationId``).
    """

    title: str
    body: str
    tag: str
    icon: str | None = None
    badge: str | None = None
    vibrate: tuple[int, ...] = ()
    renotify: bool = True
    require_interaction: bool = False
    actions: tuple[NotificationAction, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return self.data.get("url") or "/"

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "icon": self.icon,
            "badge": self.badge,
            "vibrate": list(self.vibrate),
            "renotify": self.renotify,
            "requireInteraction": self.require_interaction,
            "actions": [a.to_dict() for a in self.actions],
            "data": dict(self.data),
        }
