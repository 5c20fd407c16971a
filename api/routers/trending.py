from datetime import datetime, timedelta, timezone

from database import db, get_loop
from fastapi import APIRouter
from models import LoopStatus
from routers.loops import loop_to_dict

router = APIRouter()

TRENDING_WINDOW_DAYS = 7
DOWNLOAD_WEIGHT = 2
TOP_RATED_MIN_RATINGS = 3
LIMIT_MAX = 50


def _clamp(limit: int) -> int:
    return min(max(limit, 1), LIMIT_MAX)


def _scored(rows) -> list[dict]:
    data = []
    for row in rows:
        item = loop_to_dict(get_loop(row["id"]))
        item["trending_score"] = row["score"]
        data.append(item)
    return data


@router.get("/trending")
def get_trending(limit: int = 10):
    """Ready loops ranked by recent downloads (weighted) plus recent daily listens.

    Falls back to all-time download counts when nothing happened in the window.
    """
    limit = _clamp(limit)
    cutoff = datetime.now(timezone.utc) - timedelta(days=TRENDING_WINDOW_DAYS)
    with db() as conn:
        rows = conn.execute(
            """
            SELECT id, score FROM (
                SELECT l.id, l.created_at,
                    (SELECT COUNT(*) FROM downloads d WHERE d.loop_id = l.id AND d.created_at >= ?) * ?
                    + (SELECT COUNT(*) FROM listens s WHERE s.loop_id = l.id AND s.listen_date >= ?) AS score
                FROM loops l WHERE l.status = ?
            ) WHERE score > 0
            ORDER BY score DESC, created_at DESC LIMIT ?
            """,
            (cutoff.isoformat(), DOWNLOAD_WEIGHT, cutoff.date().isoformat(), LoopStatus.READY.value, limit),
        ).fetchall()
        if not rows:
            rows = conn.execute(
                """
                SELECT id, download_count * ? + listen_count AS score FROM loops
                WHERE status = ? ORDER BY download_count DESC, created_at DESC LIMIT ?
                """,
                (DOWNLOAD_WEIGHT, LoopStatus.READY.value, limit),
            ).fetchall()
    return {"data": _scored(rows)}


@router.get("/trending/recent")
def get_recent(limit: int = 10):
    with db() as conn:
        rows = conn.execute(
            "SELECT id FROM loops WHERE status = ? ORDER BY created_at DESC LIMIT ?",
            (LoopStatus.READY.value, _clamp(limit)),
        ).fetchall()
    return {"data": [loop_to_dict(get_loop(r["id"])) for r in rows]}


@router.get("/trending/top-rated")
def get_top_rated(limit: int = 10):
    """Best average rating among loops rated by at least three users."""
    with db() as conn:
        rows = conn.execute(
            """
            SELECT id FROM loops WHERE status = ? AND rating_count >= ?
            ORDER BY rating_avg DESC, rating_count DESC LIMIT ?
            """,
            (LoopStatus.READY.value, TOP_RATED_MIN_RATINGS, _clamp(limit)),
        ).fetchall()
    return {"data": [loop_to_dict(get_loop(r["id"])) for r in rows]}
