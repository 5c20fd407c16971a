from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class LoopStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class NotificationType(str, Enum):
    NEW_COMMENT = "new-comment"
    NEW_RATING = "new-rating"
    NEW_DOWNLOAD = "new-download"
    PROCESSING_COMPLETE = "processing-complete"
    SYSTEM = "system"


@dataclass
class Loop:
    id: str
    slug: str
    title: str
    description: Optional[str]
    bpm: int
    musical_key: Optional[str]
    duration_s: float
    genre: Optional[str]
    original_file: str
    preview_file: Optional[str]
    file_hash: str
    waveform: Optional[list[float]]
    status: LoopStatus
    error_msg: Optional[str]
    user_id: str
    created_at: str
    ready_at: Optional[str]
    tags: list[str] = field(default_factory=list)
    download_count: int = 0
    listen_count: int = 0
    favorite_count: int = 0
    rating_avg: float = 0.0
    rating_count: int = 0


@dataclass
class ProcessingJob:
    """Message carried on the audio_processing queue."""

    resource_id: str
    source_file_path: str  # relative to UPLOAD_DIR
    job_type: str = "transcode"

    def to_message(self) -> dict:
        return {
            "resourceId": self.resource_id,
            "sourceFilePath": self.source_file_path,
            "jobType": self.job_type,
        }

    @classmethod
    def from_message(cls, message: dict) -> "ProcessingJob":
        try:
            return cls(
                resource_id=str(message["resourceId"]),
                source_file_path=str(message["sourceFilePath"]),
                job_type=str(message.get("jobType", "transcode")),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed processing job: {message!r}") from e


@dataclass
class NotificationEvent:
    """Message carried on the notifications queue."""

    event_type: str
    recipient_id: str
    payload: dict = field(default_factory=dict)

    def to_message(self) -> dict:
        return {
            "eventType": self.event_type,
            "recipientId": self.recipient_id,
            "payload": self.payload,
        }

    @classmethod
    def from_message(cls, message: dict) -> "NotificationEvent":
        try:
            payload = message.get("payload") or {}
            if not isinstance(payload, dict):
                raise TypeError("payload must be an object")
            return cls(
                event_type=str(message["eventType"]),
                recipient_id=str(message["recipientId"]),
                payload=payload,
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed notification event: {message!r}") from e


@dataclass
class Notification:
    id: int
    user_id: str
    type: str
    title: str
    message: str
    data: dict
    is_read: bool
    created_at: str
