"""
Tests for JSONL session recording.
"""

import os
import sys
import json
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from servesync.logger import SessionLogger, list_session_logs, load_session_log
from servesync.motion import MotionSample


@pytest.fixture()
def recorded_log_file(tmp_path) -> str:
    """Create a short session log with samples and events."""
    logger = SessionLogger(log_dir=str(tmp_path))
    log_file = logger.start_recording(session_name="test_session")

    for i in range(10):
        logger.log_sample(
            MotionSample(
                timestamp=100.0 + i * 0.01,
                acceleration=(0.0, 0.0, -9.8),
                angular_velocity=(float(i), 0.0, 0.0),
            ),
            device="handheld",
        )
    logger.log_event("sync_outcome", {"success": True, "time_offset_ms": 12.5})
    metadata = logger.stop_recording()

    assert metadata["total_samples"] == 10
    assert metadata["total_events"] == 1
    assert os.path.exists(log_file)
    return log_file


def test_log_has_header_and_footer(recorded_log_file: str) -> None:
    with open(recorded_log_file, encoding="utf-8") as fp:
        lines = [json.loads(line) for line in fp if line.strip()]
    assert lines[0]["_type"] == "header"
    assert lines[0]["schema_version"] == SessionLogger.SCHEMA_VERSION
    assert lines[-1]["_type"] == "footer"
    assert lines[-1]["total_samples"] == 10
    assert lines[-1]["total_events"] == 1


def test_load_session_log(recorded_log_file: str) -> None:
    loaded = load_session_log(recorded_log_file)
    assert loaded["header"] is not None
    assert loaded["footer"] is not None
    assert len(loaded["samples"]) == 10
    first = loaded["samples"][0]
    assert first["device"] == "handheld"
    assert first["sample"].timestamp == pytest.approx(100.0)
    assert loaded["samples"][9]["sample"].angular_velocity == (9.0, 0.0, 0.0)
    assert loaded["events"][0]["event_type"] == "sync_outcome"
    assert loaded["events"][0]["data"]["time_offset_ms"] == 12.5


def test_list_session_logs(tmp_path, recorded_log_file: str) -> None:
    (tmp_path / "garbage.jsonl").write_text("not json\n")
    logs = {entry["name"]: entry for entry in list_session_logs(str(tmp_path))}
    assert logs["test_session"]["schema_version"] == SessionLogger.SCHEMA_VERSION
    assert logs["garbage"]["schema_version"] == "unknown"
    assert list_session_logs(str(tmp_path / "missing")) == []


def test_recording_misuse(tmp_path) -> None:
    logger = SessionLogger(log_dir=str(tmp_path))
    assert logger.stop_recording() == {"status": "not_recording"}
    with pytest.raises(RuntimeError):
        logger.log_event("x", {})

    logger.start_recording(session_name="twice")
    assert logger.is_recording
    assert logger.current_log_file.endswith("twice.jsonl")
    with pytest.raises(RuntimeError):
        logger.start_recording(session_name="again")
    logger.stop_recording()
    assert not logger.is_recording
    assert logger.current_log_file is None


def test_load_rejects_corrupt_line(tmp_path) -> None:
    path = tmp_path / "broken.jsonl"
    path.write_text('{"_type": "header"}\n{oops\n')
    with pytest.raises(ValueError):
        load_session_log(str(path))
