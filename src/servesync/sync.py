"""
Clock synchronization between the vision unit and the handheld unit.

Provides functionality to:
- Estimate the peer clock offset with a 4-timestamp round-trip exchange
- Retry exchanges with a bounded delay until the round trip is acceptable
- Queue concurrent callers onto the single in-flight exchange
- Record correlated impulses (audio peak / inertial jerk) and derive
  tap-sync and linear-drift corrections
- Map peer timestamps onto the local time axis
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import SyncConfig
from .corrections import (
    Correction, CorrectionOutcome, CorrelatedEvent, EventKind,
    clamp01, elapsed_ms, jerk_magnitude, linear_drift, tap_sync,
)
from .motion import Vector3

log = logging.getLogger(__name__)

SYNC_VERSION = "1.0"

REASON_MAX_ATTEMPTS = "max attempts exceeded"
REASON_RESET = "reset"


class Device(str, Enum):
    VISION = "vision"
    HANDHELD = "handheld"


@dataclass(frozen=True)
class TimeOrigin:
    """Session time anchor created on the initiating device."""
    local_origin: float
    wallclock_origin: str
    sync_version: str = SYNC_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_origin": self.local_origin,
            "wallclock_origin": self.wallclock_origin,
            "sync_version": self.sync_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeOrigin":
        return cls(
            local_origin=float(data["local_origin"]),
            wallclock_origin=str(data["wallclock_origin"]),
            sync_version=str(data.get("sync_version", SYNC_VERSION)),
        )


@dataclass(frozen=True)
class SyncRequest:
    t1: float
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class SyncResponse:
    t1: float  # echoed send time (local clock)
    t2: float  # peer receive time (peer clock)
    t3: float  # peer reply time (peer clock)


@dataclass
class SyncState:
    time_offset: float = 0.0  # peer - local, seconds
    round_trip_quality: float = 0.0  # seconds
    is_synchronized: bool = False
    attempt_count: int = 0


@dataclass(frozen=True)
class SyncOutcome:
    success: bool
    attempts: int
    time_offset: float = 0.0
    round_trip: Optional[float] = None
    reason: Optional[str] = None


SendFn = Callable[[SyncRequest], Optional[SyncResponse]]


def compute_round_trip(response: SyncResponse, t4: float) -> Tuple[float, float]:
    """Return (round_trip_time, offset) for one completed exchange."""
    t1, t2, t3 = response.t1, response.t2, response.t3
    rtt = (t4 - t1) - (t3 - t2)
    offset = ((t2 - t1) + (t3 - t4)) / 2.0
    return rtt, offset


class ClockSyncCoordinator:
    """
    Owns the synchronization state for one session.

    Usage:
        coordinator = ClockSyncCoordinator()
        future = coordinator.synchronize(transport, callback=on_done)
        outcome = future.result(timeout=10.0)
        local_t = coordinator.convert_peer_to_local(peer_t)
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Sync thresholds (defaults to SyncConfig())
            clock: Monotonic clock in seconds used for t1/t4 and origins
        """
        self.config = config or SyncConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = SyncState()
        self._generation = 0
        self._in_flight: Optional[Future] = None
        self._cancel: Optional[threading.Event] = None

        self._origin: Optional[TimeOrigin] = None
        self._peer_origin: Optional[float] = None

        self._events: List[CorrelatedEvent] = []
        self._corrections: List[Correction] = []
        self._current_delta_ms = 0.0

    # ------------------------------------------------------------------
    # Round-trip synchronization

    def synchronize(
        self,
        send: SendFn,
        callback: Optional[Callable[[SyncOutcome], None]] = None,
    ) -> "Future[SyncOutcome]":
        """
        Start (or join) a round-trip synchronization.

        Args:
            send: Transport primitive returning the peer response or None
            callback: Optional completion callback, invoked exactly once

        Returns:
            Future resolved with the SyncOutcome of the exchange
        """
        start = False
        with self._lock:
            if self._in_flight is not None:
                log.warning("Round-trip sync already in progress; joining it")
                future = self._in_flight
            else:
                future = Future()
                future.set_running_or_notify_cancel()
                cancel = threading.Event()
                self._in_flight = future
                self._cancel = cancel
                self._state.attempt_count = 0
                generation = self._generation
                start = True

        if callback is not None:
            future.add_done_callback(lambda f: callback(f.result()))

        if start:
            thread = threading.Thread(
                target=self._run_exchange,
                args=(send, future, cancel, generation),
                name="clock-sync",
                daemon=True,
            )
            thread.start()
        return future

    @property
    def in_progress(self) -> bool:
        with self._lock:
            return self._in_flight is not None

    def _run_exchange(
        self,
        send: SendFn,
        future: Future,
        cancel: threading.Event,
        generation: int,
    ) -> None:
        cfg = self.config
        attempt = 0
        while True:
            attempt += 1
            with self._lock:
                if generation != self._generation:
                    return
                self._state.attempt_count = attempt

            t1 = self._clock()
            request = SyncRequest(t1=t1)
            log.debug("Sync attempt %d: t1=%.6f", attempt, t1)

            try:
                response = send(request)
            except Exception as exc:
                log.warning("Sync attempt %d: transport error: %s", attempt, exc)
                response = None

            if response is None or response.t1 != request.t1:
                log.warning("Sync attempt %d: no response", attempt)
                delay = cfg.no_response_delay_s
            else:
                t4 = self._clock()
                rtt, offset = compute_round_trip(response, t4)
                log.debug(
                    "Sync attempt %d: rtt=%.3fms offset=%.3fms",
                    attempt, rtt * 1000.0, offset * 1000.0,
                )
                if rtt <= cfg.max_round_trip_s:
                    self._finish(future, generation, SyncOutcome(
                        success=True,
                        attempts=attempt,
                        time_offset=offset,
                        round_trip=rtt,
                    ))
                    return
                log.warning("Sync attempt %d: RTT too high (%.1fms)", attempt, rtt * 1000.0)
                delay = cfg.retry_delay_s

            if attempt >= cfg.max_attempts:
                log.error("Round-trip sync failed after %d attempts", attempt)
                with self._lock:
                    offset_now = self._state.time_offset
                self._finish(future, generation, SyncOutcome(
                    success=False,
                    attempts=attempt,
                    time_offset=offset_now,
                    reason=REASON_MAX_ATTEMPTS,
                ))
                return

            if cancel.wait(delay):
                return

    def _finish(self, future: Future, generation: int, outcome: SyncOutcome) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if outcome.success:
                self._state.time_offset = outcome.time_offset
                self._state.round_trip_quality = float(outcome.round_trip or 0.0)
                self._state.is_synchronized = True
                log.info(
                    "Round-trip sync complete: offset=%.3fms quality=%.1fms",
                    outcome.time_offset * 1000.0, self._state.round_trip_quality * 1000.0,
                )
            self._in_flight = None
            self._cancel = None
        future.set_result(outcome)

    # ------------------------------------------------------------------
    # Origins

    def generate_local_origin(self) -> TimeOrigin:
        """Create the session origin once; later calls return the same origin."""
        with self._lock:
            if self._origin is None:
                self._origin = TimeOrigin(
                    local_origin=float(self._clock()),
                    wallclock_origin=datetime.now().isoformat(),
                )
                log.info("Local origin generated: %.6f", self._origin.local_origin)
            return self._origin

    def apply_remote_origin(self, origin: TimeOrigin) -> bool:
        """Adopt an origin received from the initiating device. Returns False if one is set."""
        with self._lock:
            if self._origin is not None:
                return False
            self._origin = origin
            return True

    def set_initial_motion_timestamp(self, timestamp: float) -> bool:
        """Record the handheld origin from its first motion sample (first call wins)."""
        with self._lock:
            if self._peer_origin is not None:
                return False
            self._peer_origin = float(timestamp)
            log.info("Handheld origin set from first motion sample: %.6f", self._peer_origin)
            return True

    @property
    def origin(self) -> Optional[TimeOrigin]:
        return self._origin

    @property
    def peer_origin(self) -> Optional[float]:
        return self._peer_origin

    # ------------------------------------------------------------------
    # Correlated impulses

    def detect_audio_peak(self, audio_level: float, timestamp: float) -> Optional[CorrelatedEvent]:
        """Record an audio peak event when the level crosses the threshold."""
        with self._lock:
            if self._origin is None or audio_level <= self.config.audio_peak_threshold:
                return None
            event = CorrelatedEvent(
                device=Device.VISION.value,
                peak_time_ms=elapsed_ms(timestamp, self._origin.local_origin),
                confidence=clamp01(float(audio_level)),
                kind=EventKind.AUDIO_PEAK,
            )
            self._events.append(event)
        log.info("Audio peak detected at %dms", event.peak_time_ms)
        return event

    def detect_inertial_jerk(
        self,
        acceleration: Vector3,
        previous_acceleration: Optional[Vector3],
        timestamp: float,
    ) -> Optional[CorrelatedEvent]:
        """Record a jerk event when consecutive accelerations differ sharply."""
        if previous_acceleration is None:
            return None
        jerk = jerk_magnitude(acceleration, previous_acceleration)
        with self._lock:
            if self._peer_origin is None or jerk <= self.config.jerk_threshold:
                return None
            event = CorrelatedEvent(
                device=Device.HANDHELD.value,
                peak_time_ms=elapsed_ms(timestamp, self._peer_origin),
                confidence=clamp01(jerk / self.config.jerk_confidence_scale),
                kind=EventKind.INERTIAL_JERK,
            )
            self._events.append(event)
        log.info("Inertial jerk detected at %dms (jerk %.2f)", event.peak_time_ms, jerk)
        return event

    # ------------------------------------------------------------------
    # Corrections

    def tap_sync_correction(self) -> CorrectionOutcome:
        with self._lock:
            outcome = tap_sync(self._events)
            self._apply(outcome)
        return outcome

    def linear_drift_correction(self, points: Sequence[Tuple[float, float]]) -> CorrectionOutcome:
        outcome = linear_drift(
            points,
            min_points=self.config.drift_min_points,
            confidence=self.config.drift_confidence,
        )
        with self._lock:
            self._apply(outcome)
        return outcome

    def _apply(self, outcome: CorrectionOutcome) -> None:
        if outcome.correction is None:
            return
        self._corrections.append(outcome.correction)
        self._current_delta_ms = outcome.correction.delta_ms

    # ------------------------------------------------------------------
    # Queries

    def convert_peer_to_local(self, peer_time: float) -> Optional[float]:
        """Map a peer timestamp onto the local clock, or None before synchronization."""
        with self._lock:
            if not self._state.is_synchronized:
                return None
            return peer_time - self._state.time_offset

    def relative_time_ms(self, timestamp: float, device: Device) -> int:
        """Milliseconds since the device's origin plus the current correction."""
        with self._lock:
            if device == Device.HANDHELD:
                origin = self._peer_origin or 0.0
            else:
                origin = self._origin.local_origin if self._origin else 0.0
            return elapsed_ms(timestamp, origin) + int(self._current_delta_ms)

    @property
    def state(self) -> SyncState:
        with self._lock:
            return replace(self._state)

    @property
    def time_offset(self) -> float:
        with self._lock:
            return self._state.time_offset

    @property
    def is_synchronized(self) -> bool:
        with self._lock:
            return self._state.is_synchronized

    @property
    def current_delta_ms(self) -> float:
        with self._lock:
            return self._current_delta_ms

    @property
    def events(self) -> List[CorrelatedEvent]:
        with self._lock:
            return list(self._events)

    @property
    def corrections(self) -> List[Correction]:
        with self._lock:
            return list(self._corrections)

    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Cancel any in-flight exchange and clear all synchronization state."""
        with self._lock:
            self._generation += 1
            future = self._in_flight
            cancel = self._cancel
            attempts = self._state.attempt_count
            self._in_flight = None
            self._cancel = None

            self._state = SyncState()
            self._origin = None
            self._peer_origin = None
            self._events.clear()
            self._corrections.clear()
            self._current_delta_ms = 0.0

        if cancel is not None:
            cancel.set()
        if future is not None:
            future.set_result(SyncOutcome(success=False, attempts=attempts, reason=REASON_RESET))
        log.info("Clock sync coordinator reset")

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "origin": self._origin.to_dict() if self._origin else None,
                "peer_origin": self._peer_origin,
                "current_delta_ms": self._current_delta_ms,
                "event_count": len(self._events),
                "correction_count": len(self._corrections),
                "in_progress": self._in_flight is not None,
                "round_trip": {
                    "is_synchronized": self._state.is_synchronized,
                    "time_offset_ms": self._state.time_offset * 1000.0,
                    "quality_ms": self._state.round_trip_quality * 1000.0,
                    "attempt_count": self._state.attempt_count,
                },
            }
