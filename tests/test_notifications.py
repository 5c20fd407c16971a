import sqlite3
from unittest import mock

import pytest

import notifications
from broker import Queue
from conftest import FakePublisher
from models import NotificationType


@pytest.fixture
def pushed(monkeypatch):
    send = mock.Mock()
    monkeypatch.setattr(notifications.push, "send_to_user", send)
    return send


def _event(event_type, recipient, **payload):
    return {"eventType": event_type, "recipientId": recipient, "payload": payload}


def _stored(temp_db, user_id):
    with temp_db.db() as conn:
        rows = conn.execute("SELECT * FROM notifications WHERE user_id=? ORDER BY id", (user_id,)).fetchall()
    return [temp_db.row_to_notification(r) for r in rows]


@pytest.mark.parametrize(
    "event_type, payload, title, message",
    [
        (
            "new-comment",
            {"loopTitle": "Dusty Drums", "commenterUsername": "alice", "commentId": 3},
            "New Comment",
            'alice commented on "Dusty Drums"',
        ),
        ("new-rating", {"loopTitle": "Dusty Drums", "rating": 4}, "New Rating", 'Someone rated "Dusty Drums" with 4 stars'),
        (
            "new-download",
            {"loopTitle": "Dusty Drums", "downloaderUsername": "alice"},
            "Loop Downloaded",
            'alice downloaded "Dusty Drums"',
        ),
        (
            "processing-complete",
            {"loopTitle": "Dusty Drums"},
            "Loop Ready",
            'Your loop "Dusty Drums" has been processed and is now available',
        ),
        ("system", {"title": "Maintenance", "message": "Back at 10:00"}, "Maintenance", "Back at 10:00"),
    ],
)
def test_templates(temp_db, users, pushed, event_type, payload, title, message):
    created = notifications.handle_event(_event(event_type, users["bob"], **payload))

    [stored] = _stored(temp_db, users["bob"])
    assert stored.id == created.id
    assert stored.type == event_type
    assert stored.title == title
    assert stored.message == message
    assert stored.data == payload
    assert stored.is_read is False


def test_unknown_type_is_stored_as_system(temp_db, users, pushed):
    notifications.handle_event(_event("confetti", users["bob"], loopTitle="x"))

    [stored] = _stored(temp_db, users["bob"])
    assert stored.type == NotificationType.SYSTEM.value
    assert stored.title == notifications.GENERIC_TITLE
    assert stored.message == notifications.GENERIC_MESSAGE


def test_handled_event_is_pushed(temp_db, users, pushed):
    created = notifications.handle_event(_event("new-rating", users["bob"], loopTitle="x", rating=5))

    pushed.assert_called_once()
    user_id, event, data = pushed.call_args[0]
    assert user_id == users["bob"]
    assert event == "notification"
    assert data["id"] == created.id
    assert data["type"] == "new-rating"


@pytest.mark.parametrize(
    "message",
    [{}, {"eventType": "system"}, {"recipientId": "u"}, {"eventType": "system", "recipientId": "u", "payload": [1]}],
)
def test_malformed_event_raises(temp_db, pushed, message):
    with pytest.raises(ValueError):
        notifications.handle_event(message)
    pushed.assert_not_called()


def test_unknown_recipient_raises(temp_db, pushed):
    with pytest.raises(sqlite3.IntegrityError):
        notifications.handle_event(_event("system", "no-such-user"))
    pushed.assert_not_called()


class TestNotify:
    def test_publishes_event(self, users):
        publisher = FakePublisher()
        sent = notifications.notify(
            publisher, NotificationType.NEW_COMMENT, users["bob"], users["alice"], {"loopTitle": "x"}
        )

        assert sent
        assert publisher.on(Queue.NOTIFICATIONS) == [
            {"eventType": "new-comment", "recipientId": users["bob"], "payload": {"loopTitle": "x"}}
        ]

    def test_actor_is_never_notified_about_themselves(self, users):
        publisher = FakePublisher()
        sent = notifications.notify(publisher, NotificationType.NEW_COMMENT, users["alice"], users["alice"], {})

        assert not sent
        assert publisher.messages == []

    def test_system_event_without_actor(self, users):
        publisher = FakePublisher()
        assert notifications.notify(publisher, NotificationType.SYSTEM, users["alice"], None, {})
        assert len(publisher.messages) == 1

    def test_broker_outage_is_swallowed(self, users):
        assert not notifications.notify(
            FakePublisher(fail=True), NotificationType.NEW_RATING, users["bob"], users["alice"], {}
        )
