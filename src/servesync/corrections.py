"""Offset corrections derived from correlated impulses and linear drift fits."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .motion import Vector3, now_iso

log = logging.getLogger(__name__)

INSUFFICIENT_EVENTS = "insufficient events"
INSUFFICIENT_DATA = "insufficient data"
DEGENERATE_DATA = "degenerate data"


class EventKind(str, Enum):
    AUDIO_PEAK = "audio_peak"
    INERTIAL_JERK = "inertial_jerk"


class CorrectionMethod(str, Enum):
    TAP_SYNC = "tap_sync"
    LINEAR_DRIFT = "linear_drift"


@dataclass(frozen=True)
class CorrelatedEvent:
    device: str
    peak_time_ms: int
    confidence: float
    kind: EventKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device": self.device,
            "peak_ms": self.peak_time_ms,
            "confidence": self.confidence,
            "event_type": self.kind.value,
        }


@dataclass(frozen=True)
class Correction:
    delta_ms: float
    method: CorrectionMethod
    confidence: float
    applied_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delta_ms": self.delta_ms,
            "method": self.method.value,
            "confidence": self.confidence,
            "applied_at": self.applied_at,
        }


@dataclass(frozen=True)
class CorrectionOutcome:
    """Either a correction or the reason none was produced."""
    correction: Optional[Correction] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.correction is not None


def clamp01(x: float) -> float:
    return 0.0 if x < 0.0 else 1.0 if x > 1.0 else float(x)


def elapsed_ms(timestamp: float, origin: float) -> int:
    """Whole milliseconds from origin to timestamp (seconds), truncated toward zero."""
    return int((float(timestamp) - float(origin)) * 1000.0)


def jerk_magnitude(acceleration: Vector3, previous: Vector3) -> float:
    """Euclidean norm of the acceleration change between consecutive samples."""
    delta = np.asarray(acceleration, dtype=np.float64) - np.asarray(previous, dtype=np.float64)
    return float(np.linalg.norm(delta))


def tap_sync(events: Iterable[CorrelatedEvent]) -> CorrectionOutcome:
    """
    Correction from the most recent audio peak and inertial jerk.

    delta = audio.peak_time_ms - jerk.peak_time_ms, confidence is the lower of
    the two event confidences.
    """
    last_audio: Optional[CorrelatedEvent] = None
    last_jerk: Optional[CorrelatedEvent] = None
    for event in events:
        if event.kind == EventKind.AUDIO_PEAK:
            last_audio = event
        elif event.kind == EventKind.INERTIAL_JERK:
            last_jerk = event

    if last_audio is None or last_jerk is None:
        log.warning("Insufficient events for tap sync")
        return CorrectionOutcome(reason=INSUFFICIENT_EVENTS)

    correction = Correction(
        delta_ms=float(last_audio.peak_time_ms - last_jerk.peak_time_ms),
        method=CorrectionMethod.TAP_SYNC,
        confidence=min(last_audio.confidence, last_jerk.confidence),
        applied_at=now_iso(),
    )
    log.info(
        "Tap sync correction: %.2fms (confidence %.2f)",
        correction.delta_ms, correction.confidence,
    )
    return CorrectionOutcome(correction=correction)


def ols_fit(xs: Sequence[float], ys: Sequence[float]) -> Optional[Tuple[float, float]]:
    """Least squares y = slope * x + intercept; None when all x coincide."""
    x = np.asarray(xs, dtype=np.float64)
    y = np.asarray(ys, dtype=np.float64)
    x_mean = float(np.mean(x))
    y_mean = float(np.mean(y))
    sxx = float(np.sum((x - x_mean) ** 2))
    if abs(sxx) < 1e-12:
        return None
    slope = float(np.sum((x - x_mean) * (y - y_mean))) / sxx
    return slope, y_mean - slope * x_mean


def linear_drift(
    points: Sequence[Tuple[float, float]],
    min_points: int = 3,
    confidence: float = 0.8,
) -> CorrectionOutcome:
    """
    Correction from an offset-vs-elapsed-time regression.

    Args:
        points: (elapsed time, observed offset in ms) pairs
        min_points: Minimum number of pairs required
        confidence: Confidence assigned to the correction

    Returns:
        CorrectionOutcome carrying the fitted intercept as delta_ms
    """
    pairs: List[Tuple[float, float]] = [(float(x), float(y)) for x, y in points]
    if len(pairs) < min_points:
        log.warning("Need at least %d data points for linear correction", min_points)
        return CorrectionOutcome(reason=INSUFFICIENT_DATA)

    fit = ols_fit([p[0] for p in pairs], [p[1] for p in pairs])
    if fit is None:
        log.warning("Linear correction skipped: all x values are identical")
        return CorrectionOutcome(reason=DEGENERATE_DATA)

    slope, intercept = fit
    correction = Correction(
        delta_ms=intercept,
        method=CorrectionMethod.LINEAR_DRIFT,
        confidence=float(confidence),
        applied_at=now_iso(),
    )
    log.info("Linear drift correction: %.2fms (slope %.4f)", intercept, slope)
    return CorrectionOutcome(correction=correction)
