import logging
import os

import storage
from broker import Publisher, Queue, QueueUnavailableError, get_publisher
from database import db
from fastapi import APIRouter, Depends, Header, HTTPException
from models import LoopStatus, ProcessingJob

logger = logging.getLogger(__name__)
router = APIRouter()

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")


def require_admin(x_admin_token: str = Header(None)):
    if not ADMIN_TOKEN:
        raise HTTPException(500, "ADMIN_TOKEN not configured")
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(403, "Invalid admin token")


@router.get("/admin/stats")
def get_stats(auth=Depends(require_admin)):
    """Loop counts per processing status."""
    with db() as conn:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM loops GROUP BY status").fetchall()
        users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
    counts = {status.value: 0 for status in LoopStatus}
    counts.update({r["status"]: r["n"] for r in rows})
    return {"loops": counts, "users": users}


@router.post("/admin/loops/{loop_id}/reprocess")
def reprocess_loop(
    loop_id: str,
    auth=Depends(require_admin),
    publisher: Publisher = Depends(get_publisher),
):
    """Queue a failed (or stuck pending) loop for another processing run."""
    with db() as conn:
        row = conn.execute("SELECT status, original_file FROM loops WHERE id=?", (loop_id,)).fetchone()
    if not row:
        raise HTTPException(404, "Loop not found")
    if row["status"] not in (LoopStatus.FAILED.value, LoopStatus.PENDING.value):
        raise HTTPException(409, f"Loop is {row['status']}; only failed or pending loops can be reprocessed")

    job = ProcessingJob(resource_id=loop_id, source_file_path=row["original_file"])
    try:
        publisher.publish(Queue.AUDIO_PROCESSING, job.to_message())
    except QueueUnavailableError:
        raise HTTPException(503, "Processing queue unavailable")

    logger.info(f"Reprocess queued for loop {loop_id} (was {row['status']})")
    return {"ok": True, "loop_id": loop_id}


@router.delete("/admin/loops/{loop_id}")
def delete_loop(loop_id: str, auth=Depends(require_admin)):
    """Remove a loop, its social rows, and its original and preview files."""
    with db() as conn:
        row = conn.execute("SELECT original_file, preview_file FROM loops WHERE id=?", (loop_id,)).fetchone()
        if not row:
            raise HTTPException(404, "Loop not found")

        conn.execute("DELETE FROM loop_tags WHERE loop_id=?", (loop_id,))
        conn.execute("DELETE FROM comments WHERE loop_id=?", (loop_id,))
        conn.execute("DELETE FROM ratings WHERE loop_id=?", (loop_id,))
        conn.execute("DELETE FROM downloads WHERE loop_id=?", (loop_id,))
        conn.execute("DELETE FROM favorites WHERE loop_id=?", (loop_id,))
        conn.execute("DELETE FROM listens WHERE loop_id=?", (loop_id,))
        conn.execute("DELETE FROM loops WHERE id=?", (loop_id,))

    for path in (row["original_file"], storage.preview_relpath(loop_id)):
        if storage.remove(path):
            logger.info(f"Deleted file: {path}")

    logger.info(f"Deleted loop: {loop_id}")
    return {"ok": True}
