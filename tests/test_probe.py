import json
import subprocess
from unittest import mock

import pytest

from probe import probe_duration


def _completed(stdout="", returncode=0):
    return subprocess.CompletedProcess(args=["ffprobe"], returncode=returncode, stdout=stdout, stderr="")


def test_reads_container_duration():
    out = json.dumps({"format": {"duration": "10.031000", "format_name": "wav"}})
    with mock.patch("probe.subprocess.run", return_value=_completed(out)) as run:
        assert probe_duration("/uploads/originals/a.wav") == pytest.approx(10.031)
    cmd = run.call_args[0][0]
    assert cmd[0] == "ffprobe"
    assert "-show_format" in cmd
    assert cmd[-1] == "/uploads/originals/a.wav"
    assert run.call_args.kwargs["timeout"] > 0


@pytest.mark.parametrize(
    "result",
    [
        _completed("", returncode=1),
        _completed("not json"),
        _completed(json.dumps({"format": {}})),
        _completed(json.dumps({"format": {"duration": "N/A"}})),
        _completed(json.dumps({"format": {"duration": "0.000000"}})),
        _completed(json.dumps({"format": {"duration": "-1"}})),
    ],
)
def test_unusable_output_is_unknown(result):
    with mock.patch("probe.subprocess.run", return_value=result):
        assert probe_duration("a.wav") is None


def test_missing_tool_is_unknown():
    with mock.patch("probe.subprocess.run", side_effect=FileNotFoundError("ffprobe")):
        assert probe_duration("a.wav") is None


def test_timeout_is_unknown():
    with mock.patch("probe.subprocess.run", side_effect=subprocess.TimeoutExpired("ffprobe", 30)):
        assert probe_duration("a.wav") is None
