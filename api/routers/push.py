import os

from database import db, now
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from routers.users import current_user

router = APIRouter()


@router.get("/push/vapid-key")
def get_vapid_key():
    """Public key a browser needs before it can subscribe to notification pushes."""
    public_key = os.environ.get("VAPID_PUBLIC_KEY")
    if not public_key:
        raise HTTPException(503, "Notification push is not configured")
    return {"public_key": public_key}


class SubscriptionRequest(BaseModel):
    endpoint: str
    p256dh: str
    auth: str


@router.post("/push/subscribe")
def subscribe(req: SubscriptionRequest, user: dict = Depends(current_user)):
    """Upsert a push subscription for the calling user."""
    with db() as conn:
        conn.execute(
            """
            INSERT INTO push_subscriptions (endpoint, user_id, p256dh, auth, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(endpoint) DO UPDATE SET
                user_id=excluded.user_id, p256dh=excluded.p256dh, auth=excluded.auth
            """,
            (req.endpoint, user["id"], req.p256dh, req.auth, now()),
        )
    return {"ok": True}


@router.post("/push/unsubscribe")
def unsubscribe(req: SubscriptionRequest, user: dict = Depends(current_user)):
    """Remove a push subscription."""
    with db() as conn:
        conn.execute(
            "DELETE FROM push_subscriptions WHERE endpoint=? AND user_id=?",
            (req.endpoint, user["id"]),
        )
    return {"ok": True}
