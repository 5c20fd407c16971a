import io
import struct
import uuid
import wave

import pytest

from broker import QueueUnavailableError


class FakePublisher:
    """Records published messages instead of talking to RabbitMQ."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []

    def publish(self, queue, message):
        if self.fail:
            raise QueueUnavailableError(f"Could not publish to {queue.value}")
        self.messages.append((queue, message))

    def on(self, queue):
        return [m for q, m in self.messages if q == queue]

    def close(self):
        pass


def make_wav_bytes(seconds: float = 1.0, rate: int = 8000) -> bytes:
    frames = int(seconds * rate)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes(b"".join(struct.pack("<h", 8000 if i % 40 < 20 else -8000) for i in range(frames)))
    return buf.getvalue()


@pytest.fixture(autouse=True)
def no_push(monkeypatch):
    monkeypatch.delenv("VAPID_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("VAPID_CLAIMS_EMAIL", raising=False)


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    import database

    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "test.db"))
    database.init_db()
    return database


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    import storage

    root = tmp_path / "uploads"
    monkeypatch.setattr(storage, "UPLOAD_DIR", str(root))
    storage.ensure_dirs()
    return root


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def users(temp_db):
    alice = str(uuid.uuid4())
    bob = str(uuid.uuid4())
    temp_db.create_user(alice, "alice")
    temp_db.create_user(bob, "bob")
    return {"alice": alice, "bob": bob}


@pytest.fixture
def make_loop(temp_db, upload_dir, users):
    """Insert a loop row (and its original file) directly."""

    def _make(status="pending", owner="alice", title="Dusty Drums", duration_s=8.0, write_file=True):
        loop_id = str(uuid.uuid4())
        original = f"originals/{uuid.uuid4()}.wav"
        if write_file:
            (upload_dir / original).write_bytes(make_wav_bytes())
        with temp_db.db() as conn:
            conn.execute(
                """
                INSERT INTO loops (id, slug, title, bpm, duration_s, original_file, file_hash,
                                   status, user_id, created_at)
                VALUES (?, ?, ?, 90, ?, ?, ?, ?, ?, ?)
                """,
                (
                    loop_id,
                    f"loop-{loop_id[:8]}",
                    title,
                    duration_s,
                    original,
                    "ab" * 32,
                    status,
                    users[owner],
                    temp_db.now(),
                ),
            )
        return loop_id

    return _make


@pytest.fixture
def client(temp_db, upload_dir, publisher):
    from fastapi.testclient import TestClient

    import main
    from broker import get_publisher

    main.app.dependency_overrides[get_publisher] = lambda: publisher
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
