"""Tests for push payload parsing, the notification center and window clients."""

import json

import pytest

from wardshell.config import NotificationConfig
from wardshell.models import NotificationAction, NotificationDescriptor
from wardshell.notifications import (
    ClientRegistry,
    NotificationCenter,
    build_notification,
    resolve_url,
)


@pytest.fixture
def config() -> NotificationConfig:
    return NotificationConfig()


def _descriptor(tag: str = "t", body: str = "", renotify: bool = True) -> NotificationDescriptor:
    return NotificationDescriptor(title="T", body=body, tag=tag, renotify=renotify)


class TestBuildNotification:
    """Tests for build_notification."""

    def test_full_payload(self, config: NotificationConfig) -> None:
        payload = json.dumps(
            {
                "title": "New interview",
                "body": "Bishop interview on Sunday",
                "tag": "interview-12",
                "requireInteraction": True,
                "url": "/interviews/12",
                "notificationId": 881,
                "actions": [{"action": "view", "title": "View"}],
            }
        ).encode()

        descriptor = build_notification(payload, config)

        assert descriptor.title == "New interview"
        assert descriptor.body == "Bishop interview on Sunday"
        assert descriptor.tag == "interview-12"
        assert descriptor.require_interaction is True
        assert descriptor.renotify is True
        assert descriptor.actions == (NotificationAction("view", "View"),)
        assert descriptor.data == {"url": "/interviews/12", "notificationId": 881}
        assert descriptor.url == "/interviews/12"

    def test_defaults(self, config: NotificationConfig) -> None:
        descriptor = build_notification(b"{}", config)

        assert descriptor.title == "Liahonaap"
        assert descriptor.body == ""
        assert descriptor.tag == "liahonaap-notification"
        assert descriptor.icon == "/icons/icon-192x192.png"
        assert descriptor.badge == "/icons/icon-192x192.png"
        assert descriptor.vibrate == (200, 100, 200)
        assert descriptor.actions == (NotificationAction("open", "Open"), NotificationAction("close", "Close"))
        assert descriptor.url == "/"

    def test_description_alias(self, config: NotificationConfig) -> None:
        descriptor = build_notification(b'{"description": "Budget approved"}', config)
        assert descriptor.body == "Budget approved"

    def test_body_preferred_over_description(self, config: NotificationConfig) -> None:
        descriptor = build_notification(b'{"body": "a", "description": "b"}', config)
        assert descriptor.body == "a"

    def test_explicit_empty_actions_kept(self, config: NotificationConfig) -> None:
        descriptor = build_notification(b'{"actions": []}', config)
        assert descriptor.actions == ()

    def test_configured_defaults(self) -> None:
        config = NotificationConfig(title="Ward", tag="ward", actions=(("abrir", "Abrir"),))
        descriptor = build_notification(b"{}", config)

        assert descriptor.title == "Ward"
        assert descriptor.tag == "ward"
        assert descriptor.actions == (NotificationAction("abrir", "Abrir"),)

    @pytest.mark.parametrize("payload", [None, b"", "", b"not json", b"[1, 2]", b'"text"', b"\xff\xfe\x00"])
    def test_ignored_payloads(self, config: NotificationConfig, payload) -> None:
        assert build_notification(payload, config) is None

    def test_to_dict(self, config: NotificationConfig) -> None:
        data = build_notification(b'{"title": "X"}', config).to_dict()
        assert data["renotify"] is True
        assert data["requireInteraction"] is False
        assert data["actions"][0] == {"action": "open", "title": "Open"}


class TestNotificationCenter:
    """Tests for tag replacement and alerting."""

    def test_show_displays_notification(self) -> None:
        center = NotificationCenter()
        notification = center.show(_descriptor("a"))

        assert center.get("a") is notification
        assert center.alert_count == 1

    def test_same_tag_replaces(self) -> None:
        center = NotificationCenter()
        center.show(_descriptor("a", body="first"))
        center.show(_descriptor("a", body="second"))

        shown = center.get_notifications()
        assert [n.descriptor.body for n in shown] == ["second"]

    def test_renotify_alerts_on_replacement(self) -> None:
        center = NotificationCenter()
        center.show(_descriptor("a"))
        center.show(_descriptor("a"))
        assert center.alert_count == 2

    def test_silent_replacement_without_renotify(self) -> None:
        center = NotificationCenter()
        center.show(_descriptor("a", renotify=False))
        center.show(_descriptor("a", renotify=False))
        assert center.alert_count == 1

    def test_different_tags_stack(self) -> None:
        center = NotificationCenter()
        center.show(_descriptor("a"))
        center.show(_descriptor("b"))
        assert {n.tag for n in center.get_notifications()} == {"a", "b"}

    def test_close_removes_notification(self) -> None:
        center = NotificationCenter()
        notification = center.show(_descriptor("a"))

        notification.close()

        assert center.get("a") is None

    def test_closing_replaced_notification_keeps_newer(self) -> None:
        center = NotificationCenter()
        old = center.show(_descriptor("a", body="old"))
        new = center.show(_descriptor("a", body="new"))

        old.close()

        assert center.get("a") is new


class TestClientRegistry:
    """Tests for window client tracking."""

    def test_track_registers_and_updates(self) -> None:
        registry = ClientRegistry()
        registry.track("tab", "https://ward.example.org/")
        client = registry.track("tab", "https://ward.example.org/goals")

        assert registry.match_all(include_uncontrolled=True) == [client]
        assert client.url == "https://ward.example.org/goals"

    def test_match_all_excludes_uncontrolled_by_default(self) -> None:
        registry = ClientRegistry()
        registry.track("tab", "https://ward.example.org/")

        assert registry.match_all() == []
        registry.claim("liahonaap-v6")
        assert len(registry.match_all()) == 1

    def test_focus_is_exclusive(self) -> None:
        registry = ClientRegistry()
        a = registry.track("a", "https://ward.example.org/")
        b = registry.track("b", "https://ward.example.org/")

        registry.focus(a)
        registry.focus(b)

        assert (a.focused, b.focused) == (False, True)

    def test_open_window(self) -> None:
        registry = ClientRegistry()
        client = registry.open_window("https://ward.example.org/goals")

        assert client.focused is True
        assert registry.match_all(include_uncontrolled=True) == [client]

    def test_navigate(self) -> None:
        registry = ClientRegistry()
        client = registry.track("tab", "https://ward.example.org/")
        registry.navigate(client, "https://ward.example.org/budget")
        assert client.url == "https://ward.example.org/budget"


class TestResolveUrl:
    @pytest.mark.parametrize(
        ("target", "expected"),
        [
            ("/", "https://ward.example.org/"),
            ("/goals/3", "https://ward.example.org/goals/3"),
            ("goals", "https://ward.example.org/goals"),
            ("https://other.example.com/x", "https://other.example.com/x"),
        ],
    )
    def test_resolves_against_origin(self, target: str, expected: str) -> None:
        assert resolve_url("https://ward.example.org", target) == expected
