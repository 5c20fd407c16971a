from unittest import mock

import pytest
from pywebpush import WebPushException

import push

CFG = {"private_key": "test-key", "claims_email": "ops@example.com"}


@pytest.fixture
def subscriptions(temp_db, users):
    with temp_db.db() as conn:
        for endpoint in ("https://push.example/alive", "https://push.example/gone"):
            conn.execute(
                "INSERT INTO push_subscriptions (endpoint, user_id, p256dh, auth, created_at) VALUES (?, ?, ?, ?, ?)",
                (endpoint, users["bob"], "p256", "auth", temp_db.now()),
            )
    return temp_db


def _endpoints(temp_db):
    with temp_db.db() as conn:
        return {r["endpoint"] for r in conn.execute("SELECT endpoint FROM push_subscriptions")}


def test_expired_subscription_is_removed(subscriptions, users):
    def webpush(subscription_info, **kwargs):
        if subscription_info["endpoint"].endswith("gone"):
            raise WebPushException("gone", response=mock.Mock(status_code=410))

    with mock.patch("push.webpush", side_effect=webpush) as sent:
        assert push._deliver(users["bob"], '{"event": "notification"}', CFG) == 1

    assert sent.call_count == 2
    assert sent.call_args.kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
    assert _endpoints(subscriptions) == {"https://push.example/alive"}


def test_transient_failure_keeps_subscription(subscriptions, users):
    error = WebPushException("busy", response=mock.Mock(status_code=503))
    with mock.patch("push.webpush", side_effect=error):
        assert push._deliver(users["bob"], "{}", CFG) == 2

    assert len(_endpoints(subscriptions)) == 2


def test_no_subscriptions(temp_db, users):
    with mock.patch("push.webpush") as sent:
        assert push._deliver(users["alice"], "{}", CFG) == 0
    sent.assert_not_called()


def test_unconfigured_push_is_a_noop(subscriptions, users):
    with mock.patch("push.threading.Thread") as thread:
        push.send_to_user(users["bob"], "notification", {"id": 1})
    thread.assert_not_called()


def test_configured_push_runs_in_background(subscriptions, users, monkeypatch):
    monkeypatch.setenv("VAPID_PRIVATE_KEY", CFG["private_key"])
    monkeypatch.setenv("VAPID_CLAIMS_EMAIL", CFG["claims_email"])
    with mock.patch("push.threading.Thread") as thread:
        push.send_to_user(users["bob"], "notification", {"id": 1})

    kwargs = thread.call_args.kwargs
    assert kwargs["daemon"] is True
    thread.return_value.start.assert_called_once()
