import logging
import os
import subprocess
import uuid

import storage

logger = logging.getLogger(__name__)

FFMPEG_TIMEOUT_S = float(os.environ.get("FFMPEG_TIMEOUT_S", "120"))

# Fixed for every preview so streaming bandwidth and decode cost stay uniform.
PREVIEW_CODEC = "libmp3lame"
PREVIEW_BITRATE = "128k"
PREVIEW_FORMAT = "mp3"


class TranscodeError(RuntimeError):
    pass

def transcode_preview(input_path: str, loop_id: str) -> str:
    """
    Encode the original upload into the streaming preview.
    Returns the preview path relative to UPLOAD_DIR.

    ffmpeg writes to a scratch file that is renamed over the preview only on
    success, so a failed run never disturbs a preview already being served.
    """
    relative_path = storage.preview_relpath(loop_id)
    output_path = storage.upload_path(relative_path)
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    scratch_path = f"{output_path}.{uuid.uuid4().hex}.part"

    cmd = [
        "ffmpeg",
        "-nostdin",
        "-i", input_path,
        "-vn",
        "-codec:a", PREVIEW_CODEC,
        "-b:a", PREVIEW_BITRATE,
        # byte-identical output for identical input
        "-map_metadata", "-1",
        "-fflags", "+bitexact",
        "-flags:a", "+bitexact",
        "-f", PREVIEW_FORMAT,
        "-y",
        scratch_path,
    ]

    logger.info(f"Transcoding {input_path} -> {output_path}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=FFMPEG_TIMEOUT_S)
    except subprocess.TimeoutExpired as e:
        _discard(scratch_path)
        raise TranscodeError(f"ffmpeg timed out after {FFMPEG_TIMEOUT_S:.0f}s") from e
    except OSError as e:
        raise TranscodeError(f"ffmpeg could not be started: {e}") from e

    if result.returncode != 0:
        _discard(scratch_path)
        raise TranscodeError(f"ffmpeg transcode failed: {result.stderr[-500:]}")

    if not os.path.exists(scratch_path):
        raise TranscodeError(f"ffmpeg produced no output for {output_path}")

    os.replace(scratch_path, output_path)
    return relative_path


def _discard(path: str):
    if os.path.exists(path):
        os.unlink(path)
