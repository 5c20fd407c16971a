import json
import logging
import os
import subprocess

logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_S = float(os.environ.get("FFPROBE_TIMEOUT_S", "30"))


def probe_duration(file_path: str) -> float | None:
    """Container duration in seconds as reported by ffprobe.

    Returns None when the duration is unknown for any reason; callers keep
    whatever duration they already have.
    """
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        file_path,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=FFPROBE_TIMEOUT_S)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"ffprobe unavailable for {file_path}: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"ffprobe exited {result.returncode} for {file_path}")
        return None

    try:
        info = json.loads(result.stdout)
        duration = float(info["format"]["duration"])
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Could not parse ffprobe output for {file_path}: {e}")
        return None

    # NaN fails this comparison too
    if not duration > 0:
        logger.warning(f"ffprobe reported non-positive duration {duration} for {file_path}")
        return None
    return duration
