import hashlib
import logging
from datetime import datetime, timezone

import storage
from broker import Publisher, get_publisher
from database import db, now
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from models import Loop, LoopStatus, NotificationType
from notifications import notify
from pydantic import BaseModel, Field
from routers.loops import resolve_loop
from routers.users import current_user

logger = logging.getLogger(__name__)
router = APIRouter()

DOWNLOAD_LICENSE = "Royalty-free for use in commercial and non-commercial productions."


def _ready_loop(ref: str) -> Loop:
    loop = resolve_loop(ref)
    if not loop or loop.status != LoopStatus.READY:
        raise HTTPException(404, "Loop not found")
    return loop


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)


class RatingRequest(BaseModel):
    value: int = Field(..., ge=1, le=5)


@router.post("/loops/{ref}/comments", status_code=201)
async def add_comment(
    ref: str,
    req: CommentCreate,
    user: dict = Depends(current_user),
    publisher: Publisher = Depends(get_publisher),
):
    loop = _ready_loop(ref)
    content = req.content.strip()
    if not content:
        raise HTTPException(400, "Comment cannot be empty")

    created_at = now()
    with db() as conn:
        cur = conn.execute(
            "INSERT INTO comments (loop_id, user_id, content, created_at) VALUES (?, ?, ?, ?)",
            (loop.id, user["id"], content, created_at),
        )
        comment_id = cur.lastrowid

    await run_in_threadpool(
        notify,
        publisher,
        NotificationType.NEW_COMMENT,
        loop.user_id,
        user["id"],
        {
            "loopId": loop.id,
            "loopTitle": loop.title,
            "commentId": comment_id,
            "commenterUsername": user["username"],
        },
    )
    return {
        "id": comment_id,
        "loop_id": loop.id,
        "user_id": user["id"],
        "username": user["username"],
        "content": content,
        "created_at": created_at,
    }


@router.put("/loops/{ref}/rating")
async def rate_loop(
    ref: str,
    req: RatingRequest,
    user: dict = Depends(current_user),
    publisher: Publisher = Depends(get_publisher),
):
    loop = _ready_loop(ref)
    with db() as conn:
        conn.execute(
            """
            INSERT INTO ratings (loop_id, user_id, value, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(loop_id, user_id) DO UPDATE SET value=excluded.value, created_at=excluded.created_at
            """,
            (loop.id, user["id"], req.value, now()),
        )
        row = conn.execute(
            "SELECT AVG(value) AS average, COUNT(*) AS n FROM ratings WHERE loop_id=?",
            (loop.id,),
        ).fetchone()
        average = round(row["average"], 2)
        conn.execute(
            "UPDATE loops SET rating_avg=?, rating_count=? WHERE id=?",
            (average, row["n"], loop.id),
        )

    await run_in_threadpool(
        notify,
        publisher,
        NotificationType.NEW_RATING,
        loop.user_id,
        user["id"],
        {"loopId": loop.id, "loopTitle": loop.title, "rating": req.value},
    )
    return {"loop_id": loop.id, "value": req.value, "average": average, "count": row["n"]}


@router.post("/loops/{ref}/download")
async def download_loop(
    ref: str,
    user: dict = Depends(current_user),
    publisher: Publisher = Depends(get_publisher),
):
    """Record a download and issue a certificate tying the user to the original's hash."""
    loop = _ready_loop(ref)
    downloaded_at = now()
    certificate_hash = hashlib.sha256(
        f"{loop.id}:{user['id']}:{loop.file_hash}:{downloaded_at}".encode()
    ).hexdigest()

    with db() as conn:
        conn.execute(
            "INSERT INTO downloads (loop_id, user_id, certificate_hash, created_at) VALUES (?, ?, ?, ?)",
            (loop.id, user["id"], certificate_hash, downloaded_at),
        )
        conn.execute("UPDATE loops SET download_count = download_count + 1 WHERE id=?", (loop.id,))

    await run_in_threadpool(
        notify,
        publisher,
        NotificationType.NEW_DOWNLOAD,
        loop.user_id,
        user["id"],
        {"loopId": loop.id, "loopTitle": loop.title, "downloaderUsername": user["username"]},
    )
    logger.info(f"Download: loop={loop.id} user={user['id']}")
    return {
        "file": storage.upload_path(loop.original_file),
        "certificate": {
            "certificate_hash": certificate_hash,
            "loop_id": loop.id,
            "loop_title": loop.title,
            "file_hash": loop.file_hash,
            "username": user["username"],
            "downloaded_at": downloaded_at,
            "license": DOWNLOAD_LICENSE,
        },
    }


@router.post("/loops/{ref}/listen")
def record_listen(ref: str, user: dict = Depends(current_user)):
    """Count at most one listen per user, loop and UTC day."""
    loop = _ready_loop(ref)
    today = datetime.now(timezone.utc).date().isoformat()
    with db() as conn:
        cur = conn.execute(
            "INSERT OR IGNORE INTO listens (user_id, loop_id, listen_date) VALUES (?, ?, ?)",
            (user["id"], loop.id, today),
        )
        counted = cur.rowcount == 1
        if counted:
            conn.execute("UPDATE loops SET listen_count = listen_count + 1 WHERE id=?", (loop.id,))
    return {"counted": counted}
