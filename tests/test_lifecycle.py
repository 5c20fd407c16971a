import pytest

import lifecycle
from models import LoopStatus


def test_transition_table():
    assert lifecycle.can_transition(LoopStatus.PENDING, LoopStatus.PROCESSING)
    assert lifecycle.can_transition(LoopStatus.PROCESSING, LoopStatus.READY)
    assert lifecycle.can_transition(LoopStatus.PROCESSING, LoopStatus.FAILED)
    assert lifecycle.can_transition(LoopStatus.FAILED, LoopStatus.PROCESSING)
    assert not lifecycle.can_transition(LoopStatus.PENDING, LoopStatus.READY)
    assert not lifecycle.can_transition(LoopStatus.PENDING, LoopStatus.FAILED)
    for status in LoopStatus:
        assert not lifecycle.can_transition(LoopStatus.READY, status)
        assert not lifecycle.can_transition(status, LoopStatus.PENDING)


def test_begin_processing(temp_db, make_loop):
    pending = make_loop("pending")
    failed = make_loop("failed")
    ready = make_loop("ready")

    assert lifecycle.begin_processing(pending)
    assert lifecycle.begin_processing(failed)
    assert not lifecycle.begin_processing(ready)
    assert not lifecycle.begin_processing("no-such-loop")

    assert temp_db.get_loop(pending).status == LoopStatus.PROCESSING
    assert temp_db.get_loop(failed).status == LoopStatus.PROCESSING
    assert temp_db.get_loop(ready).status == LoopStatus.READY


def test_complete_writes_artifacts_with_ready(temp_db, make_loop):
    loop_id = make_loop("processing", duration_s=8.0)
    waveform = [0.25] * 100

    assert lifecycle.complete(loop_id, f"previews/{loop_id}.mp3", waveform, 9.75)

    loop = temp_db.get_loop(loop_id)
    assert loop.status == LoopStatus.READY
    assert loop.preview_file == f"previews/{loop_id}.mp3"
    assert loop.waveform == waveform
    assert loop.duration_s == pytest.approx(9.75)
    assert loop.ready_at is not None


@pytest.mark.parametrize("probed", [None, 0.0, -3.0])
def test_complete_keeps_duration_without_positive_probe(temp_db, make_loop, probed):
    loop_id = make_loop("processing", duration_s=8.0)
    assert lifecycle.complete(loop_id, "previews/x.mp3", [0.5] * 100, probed)
    assert temp_db.get_loop(loop_id).duration_s == pytest.approx(8.0)


def test_complete_requires_processing(temp_db, make_loop):
    loop_id = make_loop("pending")
    assert not lifecycle.complete(loop_id, "previews/x.mp3", [0.5] * 100, 5.0)
    loop = temp_db.get_loop(loop_id)
    assert loop.status == LoopStatus.PENDING
    assert loop.preview_file is None
    assert loop.waveform is None


def test_fail_clears_artifacts(temp_db, make_loop):
    loop_id = make_loop("processing")
    temp_db.update_processing_result(
        loop_id, "previews/stale.mp3", [0.1] * 100, LoopStatus.PROCESSING, expected_status=None
    )

    assert lifecycle.fail(loop_id, "ffmpeg transcode failed")

    loop = temp_db.get_loop(loop_id)
    assert loop.status == LoopStatus.FAILED
    assert loop.preview_file is None
    assert loop.waveform is None
    assert loop.error_msg == "ffmpeg transcode failed"


def test_ready_is_final(temp_db, make_loop):
    loop_id = make_loop("processing")
    lifecycle.complete(loop_id, "previews/x.mp3", [0.5] * 100, None)

    assert not lifecycle.fail(loop_id, "late failure")
    assert not lifecycle.begin_processing(loop_id)
    assert temp_db.get_loop(loop_id).status == LoopStatus.READY


def test_is_ready(temp_db, make_loop):
    assert lifecycle.is_ready(make_loop("ready"))
    assert not lifecycle.is_ready(make_loop("processing"))
    assert not lifecycle.is_ready("no-such-loop")
