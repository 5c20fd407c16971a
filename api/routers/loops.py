import hashlib
import json
import logging
import os
import re
import unicodedata
import uuid
from dataclasses import asdict

import storage
from broker import Publisher, Queue, QueueUnavailableError, get_publisher
from database import db, get_loop, now
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from models import Loop, LoopStatus, ProcessingJob
from probe import probe_duration
from routers.users import current_user

logger = logging.getLogger(__name__)
router = APIRouter()

ALLOWED_EXTENSIONS = {".wav", ".mp3", ".ogg", ".flac", ".aiff", ".aif"}
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB
MIN_DURATION_S = 1.0
MAX_DURATION_S = 60.0
DEFAULT_DURATION_S = 30.0  # corrected by the worker's probe
MIN_BPM, MAX_BPM = 20, 300
MAX_TAGS = 10
SLUG_MAX_LENGTH = 60
PAGE_LIMIT_MAX = 100

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def slugify(title: str) -> str:
    text = unicodedata.normalize("NFD", title.lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^a-z0-9\s-]", "", text)
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"-+", "-", text).strip("-")
    return text[:SLUG_MAX_LENGTH].strip("-") or "loop"


def unique_slug(conn, title: str) -> str:
    base = slugify(title)
    slug = base
    counter = 1
    while conn.execute("SELECT 1 FROM loops WHERE slug=?", (slug,)).fetchone():
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def parse_tags(raw: str | None) -> list[str]:
    """Accepts a JSON array or a comma separated list."""
    if not raw or not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
        items = parsed if isinstance(parsed, list) else [str(parsed)]
    except ValueError:
        items = raw.split(",")
    tags = []
    for item in items:
        name = str(item).strip().lower()[:30]
        if name and name not in tags:
            tags.append(name)
    return tags


def loop_to_dict(loop: Loop) -> dict:
    data = asdict(loop)
    data["status"] = loop.status.value
    return data


def resolve_loop(ref: str) -> Loop | None:
    """Find a loop by slug, or by id when ``ref`` looks like a UUID."""
    with db() as conn:
        row = conn.execute("SELECT id FROM loops WHERE slug=?", (ref,)).fetchone()
        if not row and UUID_RE.match(ref):
            row = conn.execute("SELECT id FROM loops WHERE id=?", (ref,)).fetchone()
    return get_loop(row["id"]) if row else None


def _insert_loop(conn, loop_id: str, fields: dict, tags: list[str]) -> str:
    slug = unique_slug(conn, fields["title"])
    conn.execute(
        """
        INSERT INTO loops (id, slug, title, description, bpm, musical_key, duration_s, genre,
                           original_file, file_hash, status, user_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
        """,
        (
            loop_id,
            slug,
            fields["title"],
            fields["description"],
            fields["bpm"],
            fields["key"],
            fields["duration_s"],
            fields["genre"],
            fields["original_file"],
            fields["file_hash"],
            fields["user_id"],
            now(),
        ),
    )
    for name in tags:
        conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
        tag_id = conn.execute("SELECT id FROM tags WHERE name=?", (name,)).fetchone()["id"]
        conn.execute("INSERT OR IGNORE INTO loop_tags (loop_id, tag_id) VALUES (?, ?)", (loop_id, tag_id))
    return slug


@router.post("/loops")
async def upload_loop(
    title: str = Form(...),
    bpm: int = Form(...),
    file: UploadFile = File(...),
    description: str | None = Form(None),
    key: str | None = Form(None),
    duration: float | None = Form(None),
    genre: str | None = Form(None),
    tags: str | None = Form(None),
    user: dict = Depends(current_user),
    publisher: Publisher = Depends(get_publisher),
):
    title = title.strip()
    if not title or len(title) > 100:
        raise HTTPException(400, "title must be 1-100 characters")
    if not (MIN_BPM <= bpm <= MAX_BPM):
        raise HTTPException(400, f"bpm must be {MIN_BPM}-{MAX_BPM}")
    description = description.strip()[:1000] if description and description.strip() else None
    key = key.strip() if key and key.strip() else None
    if key and len(key) > 10:
        raise HTTPException(400, "key must be at most 10 characters")
    genre = genre.strip() if genre and genre.strip() else None
    if genre and len(genre) > 50:
        raise HTTPException(400, "genre must be at most 50 characters")
    tag_names = parse_tags(tags)
    if len(tag_names) > MAX_TAGS:
        raise HTTPException(400, f"At most {MAX_TAGS} tags allowed")

    if not file.filename:
        raise HTTPException(400, "Audio file is required")
    ext = os.path.splitext(file.filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(400, f"Unsupported file type: {ext}")

    loop_id = str(uuid.uuid4())
    original_file = storage.original_relpath(f"{uuid.uuid4()}{ext}")
    dest = storage.upload_path(original_file)
    os.makedirs(os.path.dirname(dest), exist_ok=True)

    digest = hashlib.sha256()
    size = 0
    with open(dest, "wb") as f_out:
        while chunk := await file.read(65536):
            size += len(chunk)
            if size > MAX_FILE_SIZE:
                os.unlink(dest)
                raise HTTPException(413, "File too large (max 50MB)")
            digest.update(chunk)
            f_out.write(chunk)

    if duration is None:
        duration = await run_in_threadpool(probe_duration, dest) or DEFAULT_DURATION_S
    if not (MIN_DURATION_S <= duration <= MAX_DURATION_S):
        os.unlink(dest)
        raise HTTPException(400, f"Loop must be between {MIN_DURATION_S:.0f} and {MAX_DURATION_S:.0f} seconds long")

    fields = {
        "title": title,
        "description": description,
        "bpm": bpm,
        "key": key,
        "duration_s": duration,
        "genre": genre,
        "original_file": original_file,
        "file_hash": digest.hexdigest(),
        "user_id": user["id"],
    }
    try:
        with db() as conn:
            slug = _insert_loop(conn, loop_id, fields, tag_names)
    except Exception:
        os.unlink(dest)
        raise

    job = ProcessingJob(resource_id=loop_id, source_file_path=original_file)
    try:
        await run_in_threadpool(publisher.publish, Queue.AUDIO_PROCESSING, job.to_message())
    except QueueUnavailableError as e:
        # Row stays pending; the worker requeues pending loops when it starts.
        logger.warning(f"Loop {loop_id} accepted but not queued: {e}")

    logger.info(f"Upload: loop_id={loop_id} slug={slug} file={original_file} size={size}")
    return JSONResponse(loop_to_dict(get_loop(loop_id)), status_code=202)


@router.get("/loops")
def list_loops(
    search: str | None = None,
    bpm_min: int | None = None,
    bpm_max: int | None = None,
    key: str | None = None,
    genre: str | None = None,
    tag: str | None = None,
    page: int = 1,
    limit: int = 20,
):
    """Public listing: ready loops only."""
    page = max(page, 1)
    limit = min(max(limit, 1), PAGE_LIMIT_MAX)

    where = ["l.status = ?"]
    params: list = [LoopStatus.READY.value]

    if search:
        search = search.strip()
        if search.isdigit() and MIN_BPM <= int(search) <= MAX_BPM:
            where.append("l.bpm = ?")
            params.append(int(search))
        else:
            where.append("(l.title LIKE ? OR l.description LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
    if bpm_min is not None:
        where.append("l.bpm >= ?")
        params.append(bpm_min)
    if bpm_max is not None:
        where.append("l.bpm <= ?")
        params.append(bpm_max)
    if key:
        where.append("l.musical_key = ?")
        params.append(key)
    if genre:
        where.append("l.genre LIKE ?")
        params.append(f"%{genre}%")
    if tag:
        where.append(
            "EXISTS (SELECT 1 FROM loop_tags lt JOIN tags t ON t.id = lt.tag_id WHERE lt.loop_id = l.id AND t.name = ?)"
        )
        params.append(tag.strip().lower())

    clause = " AND ".join(where)
    with db() as conn:
        total = conn.execute(f"SELECT COUNT(*) FROM loops l WHERE {clause}", params).fetchone()[0]
        rows = conn.execute(
            f"SELECT l.id FROM loops l WHERE {clause} ORDER BY l.created_at DESC LIMIT ? OFFSET ?",
            params + [limit, (page - 1) * limit],
        ).fetchall()

    return {
        "data": [loop_to_dict(get_loop(r["id"])) for r in rows],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        },
    }


@router.get("/loops/{ref}")
def get_loop_status(ref: str):
    """Single loop by slug or id, in any status (for polling processing)."""
    loop = resolve_loop(ref)
    if not loop:
        raise HTTPException(404, "Loop not found")
    return loop_to_dict(loop)
