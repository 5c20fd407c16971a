import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable

from models import Loop, LoopStatus, Notification

DB_PATH = os.environ.get("DB_PATH", "/data/beatthat.db")

SCHEMA = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS loops (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    bpm INTEGER NOT NULL,
    musical_key TEXT,
    duration_s REAL NOT NULL,
    genre TEXT,
    original_file TEXT NOT NULL,
    preview_file TEXT,
    file_hash TEXT NOT NULL,
    waveform TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    error_msg TEXT,
    user_id TEXT NOT NULL REFERENCES users(id),
    created_at TEXT NOT NULL,
    ready_at TEXT,
    download_count INTEGER NOT NULL DEFAULT 0,
    listen_count INTEGER NOT NULL DEFAULT 0,
    favorite_count INTEGER NOT NULL DEFAULT 0,
    rating_avg REAL NOT NULL DEFAULT 0,
    rating_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_loops_status ON loops(status);

CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS loop_tags (
    loop_id TEXT NOT NULL REFERENCES loops(id) ON DELETE CASCADE,
    tag_id INTEGER NOT NULL REFERENCES tags(id),
    PRIMARY KEY (loop_id, tag_id)
);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    loop_id TEXT NOT NULL REFERENCES loops(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id),
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ratings (
    loop_id TEXT NOT NULL REFERENCES loops(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id),
    value INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (loop_id, user_id)
);

CREATE TABLE IF NOT EXISTS downloads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    loop_id TEXT NOT NULL REFERENCES loops(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id),
    certificate_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS favorites (
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    loop_id TEXT NOT NULL REFERENCES loops(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, loop_id)
);

-- one row per user, loop and UTC day
CREATE TABLE IF NOT EXISTS listens (
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    loop_id TEXT NOT NULL REFERENCES loops(id) ON DELETE CASCADE,
    listen_date TEXT NOT NULL,
    PRIMARY KEY (user_id, loop_id, listen_date)
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    data TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    endpoint TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    p256dh TEXT NOT NULL,
    auth TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def db():
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    dirname = os.path.dirname(DB_PATH)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    conn = get_connection()
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def row_to_loop(row, tags: Iterable[str] = ()) -> Loop:
    return Loop(
        id=row["id"],
        slug=row["slug"],
        title=row["title"],
        description=row["description"],
        bpm=row["bpm"],
        musical_key=row["musical_key"],
        duration_s=row["duration_s"],
        genre=row["genre"],
        original_file=row["original_file"],
        preview_file=row["preview_file"],
        file_hash=row["file_hash"],
        waveform=json.loads(row["waveform"]) if row["waveform"] else None,
        status=LoopStatus(row["status"]),
        error_msg=row["error_msg"],
        user_id=row["user_id"],
        created_at=row["created_at"],
        ready_at=row["ready_at"],
        tags=list(tags),
        download_count=row["download_count"],
        listen_count=row["listen_count"],
        favorite_count=row["favorite_count"],
        rating_avg=row["rating_avg"],
        rating_count=row["rating_count"],
    )


def row_to_notification(row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        data=json.loads(row["data"]) if row["data"] else {},
        is_read=bool(row["is_read"]),
        created_at=row["created_at"],
    )


def get_loop(loop_id: str) -> Loop | None:
    with db() as conn:
        row = conn.execute("SELECT * FROM loops WHERE id=?", (loop_id,)).fetchone()
        if not row:
            return None
        tags = [
            r["name"]
            for r in conn.execute(
                "SELECT t.name FROM tags t JOIN loop_tags lt ON lt.tag_id = t.id WHERE lt.loop_id=? ORDER BY t.name",
                (loop_id,),
            ).fetchall()
        ]
    return row_to_loop(row, tags)


def create_user(user_id: str, username: str):
    with db() as conn:
        conn.execute(
            "INSERT INTO users (id, username, created_at) VALUES (?, ?, ?)",
            (user_id, username, now()),
        )


def get_status(loop_id: str) -> LoopStatus | None:
    with db() as conn:
        row = conn.execute("SELECT status FROM loops WHERE id=?", (loop_id,)).fetchone()
    return LoopStatus(row["status"]) if row else None


def update_status(loop_id: str, status: LoopStatus, allowed_from: Iterable[LoopStatus] | None = None) -> bool:
    """Blind status write keyed by id.

    With ``allowed_from`` the write only applies while the row is in one of
    those states. Returns whether a row changed.
    """
    sql = "UPDATE loops SET status=? WHERE id=?"
    params: list = [status.value, loop_id]
    if allowed_from is not None:
        states = [s.value for s in allowed_from]
        sql += f" AND status IN ({','.join('?' * len(states))})"
        params.extend(states)
    with db() as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount > 0


def update_processing_result(
    loop_id: str,
    preview_path: str | None,
    waveform: list[float] | None,
    status: LoopStatus,
    duration_s: float | None = None,
    error_msg: str | None = None,
    expected_status: LoopStatus | None = LoopStatus.PROCESSING,
) -> bool:
    """Write preview, waveform and status in one statement.

    ``duration_s`` is only written when it is a positive number.
    """
    sets = ["preview_file=?", "waveform=?", "status=?", "error_msg=?", "ready_at=?"]
    params: list = [
        preview_path,
        json.dumps(waveform) if waveform is not None else None,
        status.value,
        error_msg,
        now() if status == LoopStatus.READY else None,
    ]
    if duration_s is not None and duration_s > 0:
        sets.append("duration_s=?")
        params.append(float(duration_s))
    sql = f"UPDATE loops SET {', '.join(sets)} WHERE id=?"
    params.append(loop_id)
    if expected_status is not None:
        sql += " AND status=?"
        params.append(expected_status.value)
    with db() as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount > 0


def create_notification(
    recipient_id: str,
    type: str,
    title: str,
    message: str,
    payload: dict | None = None,
) -> Notification:
    created_at = now()
    data = payload or {}
    with db() as conn:
        cur = conn.execute(
            """
            INSERT INTO notifications (user_id, type, title, message, data, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?)
            """,
            (recipient_id, type, title, message, json.dumps(data), created_at),
        )
        notification_id = cur.lastrowid
    return Notification(
        id=notification_id,
        user_id=recipient_id,
        type=type,
        title=title,
        message=message,
        data=data,
        is_read=False,
        created_at=created_at,
    )
