"""Push payload parsing, notification display and window clients."""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urljoin

from .config import NotificationConfig
from .models import NotificationAction, NotificationDescriptor

logger = logging.getLogger(__name__)


def _parse_actions(data: object, defaults: tuple[tuple[str, str], ...]) -> tuple[NotificationAction, ...]:
    if not isinstance(data, list):
        return tuple(NotificationAction(action, title) for action, title in defaults)

    actions = []
    for entry in data:
        if isinstance(entry, dict) and entry.get("action"):
            action = str(entry["action"])
            actions.append(NotificationAction(action, str(entry.get("title") or action)))
    return tuple(actions)


def build_notification(payload: bytes | str | None, config: NotificationConfig) -> NotificationDescriptor | None:
    """Turn a push payload into a notification descriptor.

    Payload format (JSON object, every field optional):
        {"title", "body" | "description", "tag", "requireInteraction",
         "url", "notificationId", "actions": [{"action", "title"}]}

    Returns:
        The descriptor, or None if the payload is empty or not a JSON object.
    """
    if not payload:
        return None

    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug("Ignoring malformed push payload: %s", e)
        return None

    if not isinstance(data, dict):
        logger.debug("Ignoring push payload that is not a JSON object")
        return None

    return NotificationDescriptor(
        title=str(data.get("title") or config.title),
        body=str(data.get("body") or data.get("description") or ""),
        tag=str(data.get("tag") or config.tag),
        icon=config.icon,
        badge=config.badge,
        vibrate=config.vibrate,
        renotify=True,
        require_interaction=bool(data.get("requireInteraction", False)),
        actions=_parse_actions(data.get("actions"), config.actions),
        data={
            "url": data.get("url") or "/",
            "notificationId": data.get("notificationId"),
        },
    )


@dataclass
class Notification:
    """A notification currently on display."""

    descriptor: NotificationDescriptor
    shown_at: datetime
    _center: "NotificationCenter | None" = field(default=None, repr=False, compare=False)

    @property
    def tag(self) -> str:
        return self.descriptor.tag

    @property
    def data(self) -> dict[str, Any]:
        return self.descriptor.data

    def close(self) -> None:
        if self._center is not None:
            self._center.close(self)

    def to_dict(self) -> dict[str, Any]:
        result = self.descriptor.to_dict()
        result["shownAt"] = self.shown_at.isoformat()
        return result


class NotificationCenter:
    """Displayed notifications, keyed by tag.

    Showing a notification whose tag is already on display replaces it. The
    user is alerted for new tags, and for replacements when renotify is set.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._displayed: dict[str, Notification] = {}
        self.alert_count = 0

    def show(self, descriptor: NotificationDescriptor) -> Notification:
        notification = Notification(descriptor=descriptor, shown_at=datetime.now(UTC), _center=self)
        with self._lock:
            replaced = descriptor.tag in self._displayed
            self._displayed[descriptor.tag] = notification
            alerted = not replaced or descriptor.renotify
            if alerted:
                self.alert_count += 1

        logger.info(
            "Showing notification '%s' (tag=%s%s)",
            descriptor.title,
            descriptor.tag,
            ", replaced" if replaced else "",
        )
        return notification

    def close(self, notification: Notification) -> bool:
        with self._lock:
            current = self._displayed.get(notification.tag)
            if current is not notification:
                return False
            del self._displayed[notification.tag]
        return True

    def get(self, tag: str) -> Notification | None:
        with self._lock:
            return self._displayed.get(tag)

    def get_notifications(self) -> list[Notification]:
        with self._lock:
            return list(self._displayed.values())


@dataclass
class WindowClient:
    """An open application window."""

    id: str
    url: str
    controller: str | None = None  # cache name of the controlling worker
    focused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "url": self.url, "controller": self.controller, "focused": self.focused}


class ClientRegistry:
    """Open window clients, in the order they were first seen."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: dict[str, WindowClient] = {}

    def track(self, client_id: str, url: str) -> WindowClient:
        """Record that a window is showing ``url``, registering it if new."""
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                client = WindowClient(id=client_id, url=url)
                self._clients[client_id] = client
            else:
                client.url = url
            return client

    def match_all(self, include_uncontrolled: bool = False) -> list[WindowClient]:
        with self._lock:
            clients = list(self._clients.values())
        if include_uncontrolled:
            return clients
        return [c for c in clients if c.controller is not None]

    def claim(self, controller: str) -> int:
        """Make ``controller`` the controller of every open window."""
        with self._lock:
            for client in self._clients.values():
                client.controller = controller
            return len(self._clients)

    def focus(self, client: WindowClient) -> None:
        with self._lock:
            for other in self._clients.values():
                other.focused = other is client
        logger.info("Focused window %s", client.id)

    def navigate(self, client: WindowClient, url: str) -> None:
        with self._lock:
            client.url = url
        logger.info("Navigated window %s to %s", client.id, url)

    def open_window(self, url: str) -> WindowClient:
        client = WindowClient(id=uuid.uuid4().hex, url=url)
        with self._lock:
            self._clients[client.id] = client
        self.focus(client)
        logger.info("Opened window %s at %s", client.id, url)
        return client


def resolve_url(origin: str, url: str) -> str:
    """Resolve a notification target against the application origin."""
    return urljoin(origin.rstrip("/") + "/", url)
