"""
IMU calibration: gravity-aligned world frame and PCA-based racket frame.

Provides functionality to:
- Collect a static phase and verify the device was held still
- Collect swing trials and reject trials without a clear angular velocity peak
- Build the sensor->world frame from the averaged gravity vector
- Build the sensor->racket frame from the dominant axis of swing angular velocity
- Score the calibration (gravity error, swing consistency, overall quality)

The engine is a small state machine:

    idle -> collecting_static -> collecting_swings -> completed | failed

Samples are appended on the caller's thread; phase validation and the final
computation run on the engine's worker thread.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import CalibrationConfig
from .linalg import (
    UNIT_X, UNIT_Y, UNIT_Z, RotationFrame,
    axis_variance, covariance, normalize, perpendicular_axis, power_iteration,
)
from .motion import MotionSample, acceleration_array, angular_velocity_array, peak_angular_speed

log = logging.getLogger(__name__)

REASON_UNSTABLE = "Static phase unstable - please hold still"
REASON_NO_GRAVITY = "Gravity could not be detected"
REASON_TOO_FEW_SWINGS = "Not enough swings for racket frame"
REASON_TOO_FEW_MOTION = "Not enough high-speed swing samples for racket frame"
REASON_DEGENERATE_AXIS = "Swing axis is degenerate"


class CalibrationError(Exception):
    """Raised by the frame builders; carries a human-readable reason."""


class CalibrationPhase(str, Enum):
    IDLE = "idle"
    COLLECTING_STATIC = "collecting_static"
    COLLECTING_SWINGS = "collecting_swings"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class CalibrationResult:
    """Outcome of one successful calibration run."""
    world_frame: RotationFrame  # sensor -> world (gravity aligned)
    racket_frame: RotationFrame  # sensor -> racket
    gravity_alignment_error_percent: float
    swing_plane_consistency: float  # 0-1
    quality: float  # 0-1
    min_quality: float = 0.7
    max_gravity_error_percent: float = 5.0

    @property
    def is_valid(self) -> bool:
        return (
            self.quality > self.min_quality
            and self.gravity_alignment_error_percent < self.max_gravity_error_percent
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "world_frame": self.world_frame.to_dict(),
            "racket_frame": self.racket_frame.to_dict(),
            "gravity_alignment_error_percent": self.gravity_alignment_error_percent,
            "swing_plane_consistency": self.swing_plane_consistency,
            "quality": self.quality,
            "is_valid": self.is_valid,
        }


@dataclass(frozen=True)
class CalibrationState:
    phase: CalibrationPhase
    result: Optional[CalibrationResult] = None
    reason: Optional[str] = None

    @classmethod
    def completed(cls, result: CalibrationResult) -> "CalibrationState":
        return cls(CalibrationPhase.COMPLETED, result=result)

    @classmethod
    def failed(cls, reason: str) -> "CalibrationState":
        return cls(CalibrationPhase.FAILED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "reason": self.reason,
            "result": self.result.to_dict() if self.result else None,
        }


# ----------------------------------------------------------------------
# Validation and frame construction


def static_stability(
    samples: Sequence[MotionSample],
    max_variance: float = 0.01,
) -> Tuple[bool, np.ndarray]:
    """
    Check that the static phase acceleration barely varies.

    Returns:
        Tuple of (stable, per-axis variance)
    """
    variances = axis_variance(acceleration_array(samples))
    stable = bool(len(samples) > 0 and float(np.max(variances)) <= max_variance)
    return stable, variances


def is_valid_swing(
    samples: Sequence[MotionSample],
    min_samples: int = 20,
    min_peak: float = 10.0,
) -> bool:
    """A swing needs enough samples and a peak angular speed strictly above min_peak."""
    if len(samples) < min_samples:
        return False
    return peak_angular_speed(samples) > min_peak


def mean_gravity(samples: Sequence[MotionSample]) -> np.ndarray:
    accel = acceleration_array(samples)
    if len(accel) == 0:
        return np.zeros(3)
    return np.mean(accel, axis=0)


def compute_world_frame(
    samples: Sequence[MotionSample],
    min_gravity: float = 0.5,
) -> RotationFrame:
    """
    Sensor->world frame from the averaged static acceleration.

    World Z points up (against gravity); X is an arbitrary horizontal axis.

    Raises:
        CalibrationError: If the averaged acceleration is too small
    """
    gravity = mean_gravity(samples)
    magnitude = float(np.linalg.norm(gravity))
    if magnitude < min_gravity:
        raise CalibrationError(REASON_NO_GRAVITY)

    world_z = -gravity / magnitude
    world_x = perpendicular_axis(world_z, UNIT_X, UNIT_Y, component=0)
    if world_x is None:
        raise CalibrationError(REASON_NO_GRAVITY)
    world_y = np.cross(world_z, world_x)
    return RotationFrame.from_axes(world_x, world_y, world_z)


def dominant_axis(omegas: np.ndarray, iterations: int = 24) -> Optional[np.ndarray]:
    """
    First principal component of a set of angular velocity vectors.

    Falls back to the mean direction when the samples have no spread. The
    returned axis is oriented along the mean angular velocity.
    """
    mean, cov = covariance(omegas)
    if float(np.trace(cov)) < 1e-12:
        return normalize(mean)

    seed = cov[:, int(np.argmax(np.linalg.norm(cov, axis=0)))]
    axis = normalize(power_iteration(cov, iterations=iterations, start=seed))
    if axis is None:
        return None

    # A seed orthogonal to the top eigenvector, or two close eigenvalues, leaves
    # power iteration short of the largest Rayleigh quotient.
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    if float(axis @ cov @ axis) < eigenvalues[-1] * (1.0 - 1e-9):
        log.debug("Power iteration did not converge, using eigh")
        axis = eigenvectors[:, -1]
    if float(np.dot(axis, mean)) < 0.0:
        axis = -axis
    return axis


def compute_racket_frame(
    swings: Sequence[Sequence[MotionSample]],
    motion_threshold: float = 15.0,
    min_samples: int = 20,
    iterations: int = 24,
    min_swings: int = 3,
) -> RotationFrame:
    """
    Sensor->racket frame from high-speed swing angular velocities.

    X follows the dominant swing rotation axis, Y is perpendicular to it and Z
    completes the right-handed frame.

    Raises:
        CalibrationError: If there is too little motion or the axis is degenerate
    """
    if len(swings) < min_swings:
        raise CalibrationError(REASON_TOO_FEW_SWINGS)

    chunks = [angular_velocity_array(swing) for swing in swings]
    omegas = np.vstack(chunks) if chunks else np.zeros((0, 3))
    if len(omegas):
        omegas = omegas[np.linalg.norm(omegas, axis=1) > motion_threshold]
    if len(omegas) < min_samples:
        raise CalibrationError(REASON_TOO_FEW_MOTION)

    racket_x = dominant_axis(omegas, iterations=iterations)
    if racket_x is None:
        raise CalibrationError(REASON_DEGENERATE_AXIS)
    racket_y = perpendicular_axis(racket_x, UNIT_Z, UNIT_X, component=2)
    if racket_y is None:
        raise CalibrationError(REASON_DEGENERATE_AXIS)
    racket_z = np.cross(racket_x, racket_y)
    return RotationFrame.from_axes(racket_x, racket_y, racket_z)


def gravity_alignment_error(samples: Sequence[MotionSample], expected: float = 9.8) -> float:
    """Percent deviation of the averaged static acceleration magnitude from expected."""
    if not samples:
        return 999.0
    measured = float(np.linalg.norm(mean_gravity(samples)))
    return abs(measured - expected) / expected * 100.0


def swing_plane_consistency(
    swings: Sequence[Sequence[MotionSample]],
    cv_limit: float = 0.5,
) -> float:
    """Map the coefficient of variation of per-swing peak speeds to [0, 1]."""
    if len(swings) < 2:
        return 0.0
    peaks = np.array([peak_angular_speed(s) for s in swings], dtype=np.float64)
    mean = float(np.mean(peaks))
    if mean <= 0.0:
        return 0.0
    cv = float(np.std(peaks)) / mean
    return max(0.0, min(1.0, 1.0 - cv / cv_limit))


def combine_quality(gravity_error_percent: float, consistency: float) -> float:
    return max(0.0, min(1.0, (1.0 - gravity_error_percent / 10.0) * consistency))


def compute_calibration(
    static_samples: Sequence[MotionSample],
    swings: Sequence[Sequence[MotionSample]],
    config: Optional[CalibrationConfig] = None,
) -> CalibrationResult:
    """
    Run both frame builders and the quality metrics.

    Raises:
        CalibrationError: If either frame cannot be built
    """
    cfg = config or CalibrationConfig()
    world = compute_world_frame(static_samples, min_gravity=cfg.min_gravity_magnitude)
    racket = compute_racket_frame(
        swings,
        motion_threshold=cfg.pca_motion_threshold,
        min_samples=cfg.min_pca_samples,
        iterations=cfg.pca_iterations,
    )
    gravity_error = gravity_alignment_error(static_samples, expected=cfg.expected_gravity)
    consistency = swing_plane_consistency(swings, cv_limit=cfg.consistency_cv_limit)
    return CalibrationResult(
        world_frame=world,
        racket_frame=racket,
        gravity_alignment_error_percent=gravity_error,
        swing_plane_consistency=consistency,
        quality=combine_quality(gravity_error, consistency),
        min_quality=cfg.min_quality,
        max_gravity_error_percent=cfg.max_gravity_error_percent,
    )


# ----------------------------------------------------------------------
# Engine

Observer = Callable[[CalibrationState, float], None]


class CalibrationEngine:
    """
    Thread-safe calibration state machine.

    Usage:
        engine = CalibrationEngine()
        engine.add_observer(lambda state, progress: ...)
        engine.start_calibration()
        for sample in static_samples:
            engine.add_static_sample(sample)
        for trial in swings:
            engine.add_swing(trial)
        engine.wait_until_settled()
        result = engine.result
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        """
        Initialize the engine and start its worker thread.

        Args:
            config: Calibration thresholds (defaults to CalibrationConfig())
        """
        self.config = config or CalibrationConfig()

        self._lock = threading.Lock()
        self._static_samples: List[MotionSample] = []
        self._swings: List[List[MotionSample]] = []
        self._state = CalibrationState(CalibrationPhase.IDLE)
        self._progress = 0.0
        self._result: Optional[CalibrationResult] = None
        self._generation = 0
        self._evaluation_pending = False

        self._observers: List[Observer] = []
        # Snapshots are numbered under _lock and delivered in order under _notify_lock.
        self._sequence = 0
        self._delivered = 0
        self._notify_lock = threading.RLock()

        self._jobs: queue.Queue = queue.Queue()
        self._pending_jobs = 0
        self._settled = threading.Condition()
        self._worker = threading.Thread(target=self._worker_loop, name="calibration", daemon=True)
        self._worker.start()

    # Observers

    def add_observer(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _capture(self) -> Tuple[int, CalibrationState, float]:
        """Number the current state. Caller holds _lock."""
        self._sequence += 1
        return self._sequence, self._state, self._progress

    def _notify(self, sequence: int, state: CalibrationState, progress: float) -> None:
        """
        Deliver one snapshot to every observer.

        A snapshot older than one already delivered is dropped, so observers
        always end on the latest state. Observer errors are logged and never
        reach the sample producer or the worker.
        """
        with self._notify_lock:
            if sequence <= self._delivered:
                return
            self._delivered = sequence
            with self._lock:
                observers = list(self._observers)
            for observer in observers:
                if self._delivered != sequence:
                    break
                try:
                    observer(state, progress)
                except Exception:
                    log.exception("Calibration observer failed on %s", state.phase.value)

    # Public API

    def start_calibration(self) -> None:
        """Begin a new calibration run from the static phase."""
        with self._lock:
            self._generation += 1
            self._static_samples = []
            self._swings = []
            self._evaluation_pending = False
            self._state = CalibrationState(CalibrationPhase.COLLECTING_STATIC)
            self._progress = 0.0
            snapshot = self._capture()
        log.info("Starting calibration")
        self._notify(*snapshot)

    def add_static_sample(self, sample: MotionSample) -> None:
        """Append one sample during the static phase; ignored in any other phase."""
        required = self.config.required_static_samples
        with self._lock:
            if self._state.phase != CalibrationPhase.COLLECTING_STATIC or self._evaluation_pending:
                return
            self._static_samples.append(sample)
            count = len(self._static_samples)
            self._progress = min(count, required) / required
            trigger = count >= required
            if trigger:
                self._evaluation_pending = True
            snapshot = self._capture()
            generation = self._generation
        self._notify(*snapshot)
        if trigger:
            self._submit(self._finish_static_phase, generation)

    def add_swing(self, samples: Sequence[MotionSample]) -> bool:
        """
        Submit one swing trial during the swing phase.

        Returns:
            True if the trial was accepted
        """
        cfg = self.config
        with self._lock:
            if self._state.phase != CalibrationPhase.COLLECTING_SWINGS or self._evaluation_pending:
                return False

        trial = list(samples)
        if not is_valid_swing(trial, cfg.min_swing_samples, cfg.min_swing_peak):
            log.debug("Swing rejected: insufficient movement")
            return False

        with self._lock:
            if self._state.phase != CalibrationPhase.COLLECTING_SWINGS or self._evaluation_pending:
                return False
            self._swings.append(trial)
            count = len(self._swings)
            self._progress = min(count, cfg.required_swings) / cfg.required_swings
            trigger = count >= cfg.required_swings
            if trigger:
                self._evaluation_pending = True
            snapshot = self._capture()
            generation = self._generation
        log.info("Swing %d/%d recorded", count, cfg.required_swings)
        self._notify(*snapshot)
        if trigger:
            self._submit(self._finish_swing_phase, generation)
        return True

    def reset(self) -> None:
        """Return to idle from any state, dropping buffers, queued work and the last result."""
        with self._lock:
            self._generation += 1
            self._static_samples = []
            self._swings = []
            self._result = None
            self._evaluation_pending = False
            self._state = CalibrationState(CalibrationPhase.IDLE)
            self._progress = 0.0
            snapshot = self._capture()
        self._notify(*snapshot)

    @property
    def state(self) -> CalibrationState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def result(self) -> Optional[CalibrationResult]:
        with self._lock:
            return self._result

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.to_dict(),
                "progress": self._progress,
                "static_samples": len(self._static_samples),
                "swings": len(self._swings),
            }

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        """Block until all queued validation work has run. Returns False on timeout."""
        with self._settled:
            return self._settled.wait_for(lambda: self._pending_jobs == 0, timeout=timeout)

    def close(self) -> None:
        """Stop the worker thread."""
        self._jobs.put(None)
        self._worker.join(timeout=5.0)

    # Worker

    def _submit(self, job: Callable[[int], None], generation: int) -> None:
        with self._settled:
            self._pending_jobs += 1
        self._jobs.put((job, generation))

    def _worker_loop(self) -> None:
        """Background thread running phase validation and final computation."""
        while True:
            item = self._jobs.get()
            if item is None:
                break
            job, generation = item
            try:
                job(generation)
            except Exception as exc:
                log.exception("Calibration job failed")
                self._transition(generation, CalibrationState.failed(f"Calibration error: {exc}"), 0.0)
            finally:
                with self._settled:
                    self._pending_jobs -= 1
                    self._settled.notify_all()

    def _transition(
        self,
        generation: int,
        state: CalibrationState,
        progress: float,
        result: Optional[CalibrationResult] = None,
    ) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self._evaluation_pending = False
            self._state = state
            self._progress = progress
            if result is not None:
                self._result = result
            snapshot = self._capture()
        self._notify(*snapshot)
        return True

    def _finish_static_phase(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            samples = list(self._static_samples)

        stable, variances = static_stability(samples, self.config.max_static_variance)
        log.debug("Static variance: %s (stable=%s)", np.round(variances, 6).tolist(), stable)

        if stable:
            if self._transition(generation, CalibrationState(CalibrationPhase.COLLECTING_SWINGS), 0.0):
                log.info("Gravity calibration successful, ready for swings")
        elif self._transition(generation, CalibrationState.failed(REASON_UNSTABLE), self.progress):
            log.warning("Static calibration failed: device was moving")

    def _finish_swing_phase(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            static_samples = list(self._static_samples)
            swings = [list(s) for s in self._swings]

        try:
            result = compute_calibration(static_samples, swings, self.config)
        except CalibrationError as exc:
            if self._transition(generation, CalibrationState.failed(str(exc)), 1.0):
                log.warning("Calibration failed: %s", exc)
            return

        if self._transition(generation, CalibrationState.completed(result), 1.0, result=result):
            log.info(
                "Calibration complete - quality %.2f (gravity error %.2f%%, consistency %.2f)",
                result.quality,
                result.gravity_alignment_error_percent,
                result.swing_plane_consistency,
            )
