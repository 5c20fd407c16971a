import json
import logging
import os
import threading

from database import db
from pywebpush import WebPushException, webpush

logger = logging.getLogger(__name__)

EXPIRED_STATUSES = (404, 410)


def _vapid_config() -> dict | None:
    """VAPID signing settings, or None when push is not configured."""
    private_key = os.environ.get("VAPID_PRIVATE_KEY")
    claims_email = os.environ.get("VAPID_CLAIMS_EMAIL")
    if not private_key or not claims_email:
        return None
    return {"private_key": private_key, "claims_email": claims_email}


def _subscriptions(user_id: str) -> list[dict]:
    with db() as conn:
        rows = conn.execute(
            "SELECT endpoint, p256dh, auth FROM push_subscriptions WHERE user_id=? ORDER BY created_at",
            (user_id,),
        ).fetchall()
    return [{"endpoint": r["endpoint"], "keys": {"p256dh": r["p256dh"], "auth": r["auth"]}} for r in rows]


def _send_one(subscription: dict, payload: str, cfg: dict) -> bool:
    """Send to one browser. False means the push service no longer knows it."""
    try:
        webpush(
            subscription_info=subscription,
            data=payload,
            vapid_private_key=cfg["private_key"],
            vapid_claims={"sub": f"mailto:{cfg['claims_email']}"},
        )
    except WebPushException as e:
        status = getattr(e.response, "status_code", None)
        if status in EXPIRED_STATUSES:
            return False
        logger.warning(f"Web push rejected by {subscription['endpoint'][:60]} ({status}): {e}")
    return True


def _prune(endpoints: list[str]):
    with db() as conn:
        conn.executemany("DELETE FROM push_subscriptions WHERE endpoint=?", [(e,) for e in endpoints])
    logger.info(f"Pruned {len(endpoints)} expired push subscription(s)")


def _deliver(user_id: str, payload: str, cfg: dict) -> int:
    """Push ``payload`` to each of the user's browsers; returns how many are still subscribed."""
    subscriptions = _subscriptions(user_id)
    expired = [s["endpoint"] for s in subscriptions if not _send_one(s, payload, cfg)]
    if expired:
        _prune(expired)
    return len(subscriptions) - len(expired)


def send_to_user(user_id: str, event: str, data: dict) -> None:
    """Fire-and-forget push of one event to a user's browsers.

    Runs on a daemon thread and never raises into the caller. Does nothing
    when VAPID_PRIVATE_KEY / VAPID_CLAIMS_EMAIL are unset.
    """
    cfg = _vapid_config()
    if not cfg:
        return

    payload = json.dumps({"event": event, "data": data})

    def _run():
        try:
            _deliver(user_id, payload, cfg)
        except Exception as e:
            logger.warning(f"Push delivery to user {user_id} failed: {e}")

    threading.Thread(target=_run, daemon=True, name=f"push-{user_id[:8]}").start()
