import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from servesync.corrections import (
    DEGENERATE_DATA, INSUFFICIENT_DATA, INSUFFICIENT_EVENTS,
    CorrectionMethod, CorrelatedEvent, EventKind,
    elapsed_ms, jerk_magnitude, linear_drift, ols_fit, tap_sync,
)


def _audio(ms: int, confidence: float = 0.9) -> CorrelatedEvent:
    return CorrelatedEvent(device="vision", peak_time_ms=ms, confidence=confidence, kind=EventKind.AUDIO_PEAK)


def _jerk(ms: int, confidence: float = 0.6) -> CorrelatedEvent:
    return CorrelatedEvent(device="handheld", peak_time_ms=ms, confidence=confidence, kind=EventKind.INERTIAL_JERK)


def test_tap_sync_uses_most_recent_events() -> None:
    events = [_audio(100), _jerk(80), _audio(1500, 0.95), _jerk(1450, 0.7)]
    outcome = tap_sync(events)
    assert outcome.ok
    assert outcome.correction.delta_ms == pytest.approx(50.0)
    assert outcome.correction.confidence == pytest.approx(0.7)
    assert outcome.correction.method == CorrectionMethod.TAP_SYNC


def test_tap_sync_needs_both_kinds() -> None:
    outcome = tap_sync([_audio(100), _audio(200)])
    assert not outcome.ok
    assert outcome.reason == INSUFFICIENT_EVENTS
    assert tap_sync([]).reason == INSUFFICIENT_EVENTS


def test_linear_drift_intercept() -> None:
    # offset = 0.5 * t + 12
    points = [(0.0, 12.0), (10.0, 17.0), (20.0, 22.0), (30.0, 27.0)]
    outcome = linear_drift(points)
    assert outcome.ok
    assert outcome.correction.delta_ms == pytest.approx(12.0)
    assert outcome.correction.confidence == pytest.approx(0.8)
    assert outcome.correction.method == CorrectionMethod.LINEAR_DRIFT


def test_linear_drift_rejects_short_or_degenerate_input() -> None:
    assert linear_drift([(0.0, 1.0), (1.0, 2.0)]).reason == INSUFFICIENT_DATA
    assert linear_drift([(5.0, 1.0), (5.0, 2.0), (5.0, 3.0)]).reason == DEGENERATE_DATA


def test_ols_fit_slope() -> None:
    slope, intercept = ols_fit([1.0, 2.0, 3.0], [3.0, 5.0, 7.0])
    assert slope == pytest.approx(2.0)
    assert intercept == pytest.approx(1.0)
    assert ols_fit([1.0, 1.0], [0.0, 1.0]) is None


def test_elapsed_ms_truncates() -> None:
    assert elapsed_ms(10.0019, 10.0) == 1
    assert elapsed_ms(10.0, 10.0) == 0


def test_jerk_magnitude() -> None:
    assert jerk_magnitude((3.0, 4.0, -9.8), (0.0, 0.0, -9.8)) == pytest.approx(5.0)


def test_event_to_dict_keys() -> None:
    data = _audio(42).to_dict()
    assert data == {"device": "vision", "peak_ms": 42, "confidence": 0.9, "event_type": "audio_peak"}
