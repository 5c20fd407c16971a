import logging
import re
import sqlite3
import uuid

from database import create_user, db
from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)
router = APIRouter()

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,30}$")


def current_user(x_user_id: str = Header(None)) -> dict:
    """Resolve the calling user from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(401, "X-User-Id header is required")
    with db() as conn:
        row = conn.execute("SELECT id, username FROM users WHERE id=?", (x_user_id,)).fetchone()
    if not row:
        raise HTTPException(401, "Unknown user")
    return {"id": row["id"], "username": row["username"]}


class UserCreate(BaseModel):
    username: str


@router.post("/users", status_code=201)
def register(req: UserCreate):
    username = req.username.strip()
    if not USERNAME_RE.match(username):
        raise HTTPException(400, "username must be 3-30 letters, digits, '.', '_' or '-'")
    user_id = str(uuid.uuid4())
    try:
        create_user(user_id, username)
    except sqlite3.IntegrityError:
        raise HTTPException(409, "Username already taken")
    logger.info(f"Registered user {username} ({user_id})")
    return {"id": user_id, "username": username}
