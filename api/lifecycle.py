"""Status transitions for a loop's processing lifecycle.

    pending ──> processing ──> ready
                    │   ^
                    v   │ (retry)
                  failed

A redelivered job may find the loop still in ``processing`` (the previous
worker died before acking) and simply starts over. ``ready`` is final: a job
for a ready loop does nothing. No state ever returns to ``pending``.

All writes are conditional on the current state and never read the row first.
"""

import logging

from database import get_status, update_processing_result, update_status
from models import LoopStatus

logger = logging.getLogger(__name__)

TRANSITIONS: dict[LoopStatus, frozenset[LoopStatus]] = {
    LoopStatus.PENDING: frozenset({LoopStatus.PROCESSING}),
    LoopStatus.PROCESSING: frozenset({LoopStatus.PROCESSING, LoopStatus.READY, LoopStatus.FAILED}),
    LoopStatus.FAILED: frozenset({LoopStatus.PROCESSING}),
    LoopStatus.READY: frozenset(),
}


def can_transition(current: LoopStatus, target: LoopStatus) -> bool:
    return target in TRANSITIONS[current]


def _sources(target: LoopStatus) -> list[LoopStatus]:
    return [s for s, targets in TRANSITIONS.items() if target in targets]


def is_ready(loop_id: str) -> bool:
    return get_status(loop_id) == LoopStatus.READY


def begin_processing(loop_id: str) -> bool:
    """Move a loop into ``processing``. False if it is ready or unknown."""
    started = update_status(loop_id, LoopStatus.PROCESSING, allowed_from=_sources(LoopStatus.PROCESSING))
    if not started:
        logger.info(f"Loop {loop_id} is ready or missing; nothing to process")
    return started


def complete(loop_id: str, preview_path: str, waveform: list[float], duration_s: float | None) -> bool:
    """Publish preview, waveform and (if known) the probed duration together with ``ready``."""
    done = update_processing_result(
        loop_id,
        preview_path=preview_path,
        waveform=waveform,
        status=LoopStatus.READY,
        duration_s=duration_s,
        expected_status=LoopStatus.PROCESSING,
    )
    if not done:
        logger.warning(f"Loop {loop_id} left processing before it could be marked ready")
    return done


def fail(loop_id: str, error_msg: str) -> bool:
    """Mark a processing loop failed and clear any artifacts recorded for it."""
    failed = update_processing_result(
        loop_id,
        preview_path=None,
        waveform=None,
        status=LoopStatus.FAILED,
        error_msg=error_msg[:1000],
        expected_status=LoopStatus.PROCESSING,
    )
    if not failed:
        logger.warning(f"Loop {loop_id} was not processing; failure not recorded")
    return failed
