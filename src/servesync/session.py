"""
Capture session that wires synchronization and calibration together.

Provides the processing chain:
- Handheld motion samples -> origin / jerk detection -> static calibration phase
- Swing trials -> swing calibration phase
- Audio levels -> audio peak detection
- Sync outcomes and calibration transitions -> session log
"""

import logging
import time
from typing import Optional, Dict, Any, Sequence, Tuple
from concurrent.futures import Future

from .calibration import CalibrationEngine, CalibrationPhase, CalibrationResult, CalibrationState
from .config import CalibrationConfig, SyncConfig
from .corrections import CorrectionOutcome
from .logger import SessionLogger
from .motion import MotionSample, Vector3
from .sync import ClockSyncCoordinator, Device, SendFn, SyncOutcome, TimeOrigin

log = logging.getLogger(__name__)


class ServeSession:
    """
    One capture session: owns a clock coordinator and a calibration engine.

    Both are created with the session and released by stop(), so nothing is
    shared between sessions.

    Usage:
        session = ServeSession(transport=TcpSyncTransport("192.168.0.5"))
        session.start()
        session.synchronize().result(timeout=10.0)
        session.start_calibration()
        session.on_motion_sample(sample)
        session.on_swing(trial)
        summary = session.stop()
    """

    def __init__(
        self,
        transport: Optional[SendFn] = None,
        sync_config: Optional[SyncConfig] = None,
        calibration_config: Optional[CalibrationConfig] = None,
        enable_logging: bool = False,
        log_dir: str = "./logs",
        clock=time.monotonic,
    ):
        """
        Initialize the session.

        Args:
            transport: Round-trip transport primitive used by synchronize()
            sync_config: Clock sync thresholds
            calibration_config: Calibration thresholds
            enable_logging: Whether to record samples and events to JSONL
            log_dir: Directory for log files
            clock: Monotonic clock for the vision-side origin and t1/t4
        """
        self.transport = transport
        self.coordinator = ClockSyncCoordinator(sync_config, clock=clock)
        self.engine = CalibrationEngine(calibration_config)
        self.engine.add_observer(self._on_calibration_state)

        self.logger: Optional[SessionLogger] = None
        if enable_logging:
            self.logger = SessionLogger(log_dir=log_dir)

        self._previous_acceleration: Optional[Vector3] = None
        self._last_phase: Optional[CalibrationPhase] = None
        self._running = False

        self.samples_received = 0
        self.swings_submitted = 0
        self.start_time: Optional[float] = None

    # Lifecycle

    def start(self, session_name: Optional[str] = None) -> TimeOrigin:
        """Start the session and create its time origin."""
        if self.logger and not self.logger.is_recording:
            self.logger.start_recording(session_name=session_name)
        self._running = True
        self.start_time = time.time()
        origin = self.coordinator.generate_local_origin()
        self._log_event("time_origin", origin.to_dict())
        return origin

    def stop(self) -> Dict[str, Any]:
        """Stop the session, release the engine worker and close the log."""
        self._running = False
        summary = {
            "samples_received": self.samples_received,
            "swings_submitted": self.swings_submitted,
            "duration_seconds": time.time() - self.start_time if self.start_time else 0,
            "sync": self.coordinator.status(),
            "calibration": self.engine.snapshot(),
        }
        self.coordinator.reset()
        self.engine.close()

        log_metadata: Dict[str, Any] = {}
        if self.logger:
            log_metadata = self.logger.stop_recording()
        summary["log_metadata"] = log_metadata
        return summary

    @property
    def is_running(self) -> bool:
        return self._running

    # Synchronization

    def synchronize(self) -> "Future[SyncOutcome]":
        """
        Run the round-trip exchange over the session transport.

        The returned future resolves after the outcome has been logged.

        Raises:
            RuntimeError: If the session was created without a transport
        """
        if self.transport is None:
            raise RuntimeError("Session has no transport")

        done: "Future[SyncOutcome]" = Future()

        def _complete(outcome: SyncOutcome) -> None:
            try:
                self._on_sync_outcome(outcome)
            finally:
                done.set_result(outcome)

        self.coordinator.synchronize(self.transport, callback=_complete)
        return done

    def _on_sync_outcome(self, outcome: SyncOutcome) -> None:
        self._log_event("sync_outcome", {
            "success": outcome.success,
            "attempts": outcome.attempts,
            "time_offset_ms": outcome.time_offset * 1000.0,
            "round_trip_ms": outcome.round_trip * 1000.0 if outcome.round_trip is not None else None,
            "reason": outcome.reason,
        })

    def on_audio_level(self, level: float, timestamp: float) -> None:
        event = self.coordinator.detect_audio_peak(level, timestamp)
        if event is not None:
            self._log_event("correlated_event", event.to_dict())

    def apply_tap_sync(self) -> CorrectionOutcome:
        outcome = self.coordinator.tap_sync_correction()
        self._log_correction(outcome)
        return outcome

    def apply_linear_drift(self, points: Sequence[Tuple[float, float]]) -> CorrectionOutcome:
        outcome = self.coordinator.linear_drift_correction(points)
        self._log_correction(outcome)
        return outcome

    def _log_correction(self, outcome: CorrectionOutcome) -> None:
        if outcome.correction is not None:
            self._log_event("correction", outcome.correction.to_dict())
        else:
            self._log_event("correction_skipped", {"reason": outcome.reason})

    # Calibration

    def start_calibration(self) -> None:
        self.engine.start_calibration()

    def on_motion_sample(self, sample: MotionSample) -> None:
        """Handle one handheld motion sample."""
        if not self._running:
            return

        self.samples_received += 1
        self.coordinator.set_initial_motion_timestamp(sample.timestamp)
        event = self.coordinator.detect_inertial_jerk(
            sample.acceleration, self._previous_acceleration, sample.timestamp
        )
        self._previous_acceleration = sample.acceleration
        if event is not None:
            self._log_event("correlated_event", event.to_dict())

        self.engine.add_static_sample(sample)

        if self.logger and self.logger.is_recording:
            self.logger.log_sample(sample, device=Device.HANDHELD.value)

    def on_swing(self, samples: Sequence[MotionSample]) -> bool:
        """Submit one swing trial; returns True if it was accepted."""
        if not self._running:
            return False
        self.swings_submitted += 1
        return self.engine.add_swing(samples)

    @property
    def calibration_result(self) -> Optional[CalibrationResult]:
        return self.engine.result

    def relative_time_ms(self, sample: MotionSample) -> int:
        return self.coordinator.relative_time_ms(sample.timestamp, Device.HANDHELD)

    def _on_calibration_state(self, state: CalibrationState, progress: float) -> None:
        # The engine delivers snapshots one at a time, in order, so _last_phase needs no lock.
        if state.phase == self._last_phase:
            return
        self._last_phase = state.phase
        self._log_event("calibration_state", state.to_dict())

    def _log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.logger and self.logger.is_recording:
            self.logger.log_event(event_type, data)
