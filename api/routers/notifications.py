from dataclasses import asdict

from database import db, row_to_notification
from fastapi import APIRouter, Depends, HTTPException
from routers.users import current_user

router = APIRouter()


@router.get("/notifications")
def list_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    user: dict = Depends(current_user),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    where = "user_id=?" + (" AND is_read=0" if unread_only else "")

    with db() as conn:
        rows = conn.execute(
            f"SELECT * FROM notifications WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (user["id"], limit, (page - 1) * limit),
        ).fetchall()
        total = conn.execute(f"SELECT COUNT(*) FROM notifications WHERE {where}", (user["id"],)).fetchone()[0]
        unread = conn.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id=? AND is_read=0",
            (user["id"],),
        ).fetchone()[0]

    return {
        "data": [asdict(row_to_notification(r)) for r in rows],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
            "unread_count": unread,
        },
    }


@router.post("/notifications/read-all")
def mark_all_read(user: dict = Depends(current_user)):
    with db() as conn:
        cur = conn.execute(
            "UPDATE notifications SET is_read=1 WHERE user_id=? AND is_read=0",
            (user["id"],),
        )
    return {"updated": cur.rowcount}


@router.post("/notifications/{notification_id}/read")
def mark_read(notification_id: int, user: dict = Depends(current_user)):
    with db() as conn:
        cur = conn.execute(
            "UPDATE notifications SET is_read=1 WHERE id=? AND user_id=?",
            (notification_id, user["id"]),
        )
    if cur.rowcount == 0:
        raise HTTPException(404, "Notification not found")
    return {"ok": True}


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: int, user: dict = Depends(current_user)):
    with db() as conn:
        cur = conn.execute(
            "DELETE FROM notifications WHERE id=? AND user_id=?",
            (notification_id, user["id"]),
        )
    if cur.rowcount == 0:
        raise HTTPException(404, "Notification not found")
    return {"ok": True}
