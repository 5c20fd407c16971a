import os

UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "/uploads")
ORIGINALS = "originals"
PREVIEWS = "previews"
PREVIEW_EXT = "mp3"


def upload_path(relative_path: str) -> str:
    """Absolute path for a path stored relative to the upload root."""
    return os.path.join(UPLOAD_DIR, relative_path)


def original_relpath(filename: str) -> str:
    return f"{ORIGINALS}/{filename}"


def preview_relpath(loop_id: str) -> str:
    return f"{PREVIEWS}/{loop_id}.{PREVIEW_EXT}"


def ensure_dirs():
    for sub in (ORIGINALS, PREVIEWS):
        os.makedirs(os.path.join(UPLOAD_DIR, sub), exist_ok=True)


def remove(relative_path: str | None) -> bool:
    if not relative_path:
        return False
    path = upload_path(relative_path)
    if os.path.exists(path):
        os.unlink(path)
        return True
    return False
