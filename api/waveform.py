import logging
import os
import subprocess
import threading
from typing import Iterable, Iterator

import numpy as np

logger = logging.getLogger(__name__)

SAMPLE_RATE = 8000  # visual envelope only, never played back
WAVEFORM_POINTS = 100
FALLBACK_LEVEL = 0.5
CHUNK_BYTES = 32768
BYTES_PER_SAMPLE = 4  # f32le

FFMPEG_TIMEOUT_S = float(os.environ.get("FFMPEG_TIMEOUT_S", "120"))


class DecodeError(RuntimeError):
    pass


def flat_waveform(points: int = WAVEFORM_POINTS) -> list[float]:
    return [FALLBACK_LEVEL] * points


def decode_samples(file_path: str, chunk_bytes: int = CHUNK_BYTES) -> Iterator[np.ndarray]:
    """Stream mono float32 PCM at SAMPLE_RATE from ffmpeg, one chunk at a time.

    Chunks are yielded as soon as they are read from the pipe, so the caller
    controls how much decoded audio is held in memory. Raises DecodeError if
    ffmpeg cannot be started, exits non-zero, or runs past FFMPEG_TIMEOUT_S.
    """
    cmd = [
        "ffmpeg",
        "-nostdin",
        "-v", "error",
        "-i", file_path,
        "-vn",
        "-ac", "1",
        "-ar", str(SAMPLE_RATE),
        "-f", "f32le",
        "pipe:1",
    ]
    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise DecodeError(f"ffmpeg could not be started: {e}") from e

    timed_out = threading.Event()

    def _kill():
        timed_out.set()
        proc.kill()

    timer = threading.Timer(FFMPEG_TIMEOUT_S, _kill)
    timer.daemon = True
    timer.start()
    try:
        pending = b""
        while True:
            data = proc.stdout.read(chunk_bytes)
            if not data:
                break
            data = pending + data
            usable = len(data) - len(data) % BYTES_PER_SAMPLE
            pending = data[usable:]
            if usable:
                yield np.frombuffer(data[:usable], dtype="<f4")
        stderr = proc.stderr.read().decode(errors="ignore")
        returncode = proc.wait()
    finally:
        timer.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        proc.stdout.close()
        proc.stderr.close()

    if timed_out.is_set():
        raise DecodeError(f"ffmpeg decode timed out after {FFMPEG_TIMEOUT_S:.0f}s")
    if returncode != 0:
        raise DecodeError(f"ffmpeg decode failed ({returncode}): {stderr[-500:]}")


def envelope(chunks: Iterable[np.ndarray], points: int = WAVEFORM_POINTS) -> list[float]:
    """Reduce a stream of PCM chunks to ``points`` normalized window means.

    Windows are ``max(1, n // points)`` samples wide, taken in order from the
    start; samples past the last full window are dropped. Each mean is divided
    by the peak absolute sample. A stream shorter than ``points`` samples
    yields one value per sample.
    """
    rectified = []
    peak = 0.0
    for chunk in chunks:
        if chunk.size == 0:
            continue
        mags = np.abs(np.nan_to_num(chunk, nan=0.0, posinf=1.0, neginf=-1.0))
        peak = max(peak, float(mags.max()))
        rectified.append(mags)

    if not rectified:
        return []

    samples = np.concatenate(rectified)
    step = max(1, samples.size // points)
    count = min(points, samples.size // step)
    means = samples[: count * step].reshape(count, step).mean(axis=1, dtype=np.float64)

    if peak == 0:
        return [0.0] * count
    return np.clip(means / peak, 0.0, 1.0).tolist()


def extract_waveform(file_path: str) -> list[float]:
    """Waveform envelope for UI rendering; flat placeholder if the audio can't be decoded."""
    logger.info(f"Extracting waveform from {file_path}")
    try:
        values = envelope(decode_samples(file_path))
    except DecodeError as e:
        logger.warning(f"Waveform decode failed for {file_path}, using flat envelope: {e}")
        return flat_waveform()

    if not values:
        logger.warning(f"No audio samples decoded from {file_path}, using flat envelope")
        return flat_waveform()

    if len(values) < WAVEFORM_POINTS:
        logger.info(f"Short source {file_path}: waveform has {len(values)} points")
    return values
