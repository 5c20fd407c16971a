import logging
import sqlite3

from database import db, get_loop, now
from fastapi import APIRouter, Depends, HTTPException
from models import Loop
from routers.loops import PAGE_LIMIT_MAX, loop_to_dict, resolve_loop
from routers.social import _ready_loop
from routers.users import current_user

logger = logging.getLogger(__name__)
router = APIRouter()


def _existing_loop(ref: str) -> Loop:
    loop = resolve_loop(ref)
    if not loop:
        raise HTTPException(404, "Loop not found")
    return loop


@router.get("/favorites")
def list_favorites(page: int = 1, limit: int = 20, user: dict = Depends(current_user)):
    page = max(page, 1)
    limit = min(max(limit, 1), PAGE_LIMIT_MAX)
    with db() as conn:
        rows = conn.execute(
            "SELECT loop_id, created_at FROM favorites WHERE user_id=? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (user["id"], limit, (page - 1) * limit),
        ).fetchall()
        total = conn.execute("SELECT COUNT(*) FROM favorites WHERE user_id=?", (user["id"],)).fetchone()[0]

    data = []
    for row in rows:
        item = loop_to_dict(get_loop(row["loop_id"]))
        item["favorited_at"] = row["created_at"]
        data.append(item)
    return {
        "data": data,
        "meta": {"total": total, "page": page, "limit": limit, "total_pages": (total + limit - 1) // limit},
    }


@router.post("/favorites/{ref}", status_code=201)
def add_favorite(ref: str, user: dict = Depends(current_user)):
    loop = _ready_loop(ref)
    try:
        with db() as conn:
            conn.execute(
                "INSERT INTO favorites (user_id, loop_id, created_at) VALUES (?, ?, ?)",
                (user["id"], loop.id, now()),
            )
            conn.execute("UPDATE loops SET favorite_count = favorite_count + 1 WHERE id=?", (loop.id,))
    except sqlite3.IntegrityError:
        raise HTTPException(409, "Loop already in favorites")
    logger.info(f"Favorite: loop={loop.id} user={user['id']}")
    return {"loop_id": loop.id, "favorited": True}


@router.delete("/favorites/{ref}")
def remove_favorite(ref: str, user: dict = Depends(current_user)):
    loop = _existing_loop(ref)
    with db() as conn:
        cur = conn.execute("DELETE FROM favorites WHERE user_id=? AND loop_id=?", (user["id"], loop.id))
        if cur.rowcount == 0:
            raise HTTPException(404, "Favorite not found")
        conn.execute("UPDATE loops SET favorite_count = MAX(favorite_count - 1, 0) WHERE id=?", (loop.id,))
    return {"loop_id": loop.id, "favorited": False}


@router.get("/favorites/{ref}/check")
def is_favorited(ref: str, user: dict = Depends(current_user)):
    loop = _existing_loop(ref)
    with db() as conn:
        row = conn.execute(
            "SELECT 1 FROM favorites WHERE user_id=? AND loop_id=?", (user["id"], loop.id)
        ).fetchone()
    return {"loop_id": loop.id, "favorited": row is not None}
