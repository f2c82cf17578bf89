"""Simulation utilities for synthetic IMU data and a simulated handheld peer.

This module also provides a small in-process session runner so clock sync and
calibration can be exercised deterministically without a handheld device.
"""

from __future__ import annotations

import argparse
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Sequence

import numpy as np

from .config import SyncConfig
from .motion import MotionSample
from .session import ServeSession
from .sync import SyncRequest, SyncResponse

GRAVITY_DOWN = (0.0, 0.0, -9.8)


class ManualClock:
    """Deterministic monotonic clock that only moves when advanced."""

    def __init__(self, start: float = 1000.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += float(seconds)
            return self._now


def static_samples(
    count: int = 300,
    gravity: Sequence[float] = GRAVITY_DOWN,
    variance: float = 0.0,
    *,
    start: float = 0.0,
    rate_hz: float = 100.0,
    seed: int = 0,
) -> list[MotionSample]:
    """Samples of a device held still.

    Acceleration alternates by +/- sqrt(variance) around gravity on every axis,
    so an even count has exactly the requested per-axis population variance.
    Angular velocity carries small seeded noise.
    """
    if count <= 0:
        raise ValueError("count must be > 0")
    if variance < 0.0:
        raise ValueError("variance must be >= 0")

    rng = np.random.default_rng(int(seed))
    g = np.asarray(gravity, dtype=np.float64)
    amplitude = float(np.sqrt(variance))
    dt = 1.0 / float(rate_hz)

    samples = []
    for i in range(int(count)):
        sign = 1.0 if i % 2 == 0 else -1.0
        accel = g + sign * amplitude
        gyro = rng.normal(0.0, 0.01, size=3)
        samples.append(MotionSample(
            timestamp=start + i * dt,
            acceleration=accel.tolist(),
            angular_velocity=gyro.tolist(),
        ))
    return samples


def swing_trial(
    axis: Sequence[float] = (1.0, 0.0, 0.0),
    peak: float = 25.0,
    count: int = 40,
    *,
    start: float = 0.0,
    rate_hz: float = 100.0,
    gravity: Sequence[float] = GRAVITY_DOWN,
) -> list[MotionSample]:
    """One swing: angular velocity about `axis` rising to exactly `peak` and back."""
    if count < 3:
        raise ValueError("count must be >= 3")
    direction = np.asarray(axis, dtype=np.float64)
    norm = float(np.linalg.norm(direction))
    if norm <= 0.0:
        raise ValueError("axis must be non-zero")
    direction = direction / norm

    mid = (count - 1) / 2.0
    peak_indices = {int(np.floor(mid)), int(np.ceil(mid))}
    dt = 1.0 / float(rate_hz)
    samples = []
    for i in range(int(count)):
        # Triangular profile; the middle sample (or pair) reaches the peak.
        if i in peak_indices:
            scale = 1.0
        else:
            scale = 1.0 - abs(i - mid) / (mid + 1.0)
        omega = direction * peak * scale
        samples.append(MotionSample(
            timestamp=start + i * dt,
            acceleration=list(gravity),
            angular_velocity=omega.tolist(),
        ))
    return samples


class SimulatedPeer:
    """In-process handheld peer usable as a round-trip transport.

    The peer clock runs `offset_s` ahead of the shared ManualClock. Each leg of
    the exchange advances the clock by `latency_s`, and replying takes
    `processing_s`. The first `drop_first` requests get no response.
    """

    def __init__(
        self,
        clock: ManualClock,
        offset_s: float = 0.25,
        latency_s: float = 0.01,
        processing_s: float = 0.001,
        drop_first: int = 0,
    ):
        self.clock = clock
        self.offset_s = float(offset_s)
        self.latency_s = float(latency_s)
        self.processing_s = float(processing_s)
        self.drop_first = int(drop_first)
        self.requests = 0

    def peer_time(self) -> float:
        return self.clock() + self.offset_s

    def __call__(self, request: SyncRequest) -> SyncResponse | None:
        self.requests += 1
        if self.requests <= self.drop_first:
            return None
        self.clock.advance(self.latency_s)
        t2 = self.peer_time()
        self.clock.advance(self.processing_s)
        t3 = self.peer_time()
        self.clock.advance(self.latency_s)
        return SyncResponse(t1=request.t1, t2=t2, t3=t3)


def run_simulated_session(
    *,
    offset_s: float = 0.25,
    latency_s: float = 0.01,
    swings: int = 5,
    static_variance: float = 0.001,
    swing_axis: Sequence[float] = (1.0, 0.0, 0.0),
    seed: int = 0,
    out_dir: str | None = None,
    sync_config: SyncConfig | None = None,
    timeout: float = 10.0,
) -> dict:
    """Run sync, one tap and a full calibration against a simulated peer.

    Returns a summary dict with keys:
      sync_success, attempts, time_offset_ms, round_trip_ms, tap_delta_ms,
      calibration_phase, calibration_reason, quality, is_valid,
      gravity_error_percent, consistency, racket_x, log_file
    """
    if swings <= 0:
        raise ValueError("swings must be > 0")

    clock = ManualClock()
    peer = SimulatedPeer(clock, offset_s=offset_s, latency_s=latency_s)

    session = ServeSession(
        transport=peer,
        sync_config=sync_config,
        enable_logging=out_dir is not None,
        log_dir=out_dir or "./logs",
        clock=clock,
    )

    log_file = None
    if out_dir is not None:
        Path(out_dir).mkdir(parents=True, exist_ok=True)
        session.start(session_name=f"sim-{datetime.now().strftime('%Y%m%d_%H%M%S')}-{seed}")
        log_file = session.logger.current_log_file if session.logger else None
    else:
        session.start()

    try:
        outcome = session.synchronize().result(timeout=timeout)

        session.start_calibration()
        static_count = 300
        rate_hz = 100.0
        for sample in static_samples(static_count, variance=static_variance,
                                     start=peer.peer_time(), rate_hz=rate_hz, seed=seed):
            session.on_motion_sample(sample)
        clock.advance(static_count / rate_hz)
        session.engine.wait_until_settled(timeout)

        # Racket tap: a jerk on the handheld and an audio peak on the vision side.
        clock.advance(0.5)
        tap = MotionSample(
            timestamp=peer.peer_time(),
            acceleration=(8.0, 0.0, -9.8),
            angular_velocity=(0.0, 0.0, 0.0),
        )
        session.on_motion_sample(tap)
        session.on_audio_level(0.9, clock() + latency_s)
        tap_outcome = session.apply_tap_sync()

        for _ in range(int(swings)):
            session.on_swing(swing_trial(swing_axis, start=peer.peer_time()))
            clock.advance(1.0)
        session.engine.wait_until_settled(timeout)

        state = session.engine.state
        result = session.calibration_result
    finally:
        session.stop()

    return {
        "sync_success": outcome.success,
        "attempts": outcome.attempts,
        "time_offset_ms": outcome.time_offset * 1000.0,
        "round_trip_ms": outcome.round_trip * 1000.0 if outcome.round_trip is not None else None,
        "tap_delta_ms": tap_outcome.correction.delta_ms if tap_outcome.correction else None,
        "calibration_phase": state.phase.value,
        "calibration_reason": state.reason,
        "quality": result.quality if result else None,
        "is_valid": result.is_valid if result else False,
        "gravity_error_percent": result.gravity_alignment_error_percent if result else None,
        "consistency": result.swing_plane_consistency if result else None,
        "racket_x": result.racket_frame.x_axis.tolist() if result else None,
        "log_file": log_file,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m servesync.sim")
    parser.add_argument("--offset-ms", type=float, default=250.0, help="Peer clock offset (ms)")
    parser.add_argument("--latency-ms", type=float, default=10.0, help="One-way link latency (ms)")
    parser.add_argument("--swings", type=int, default=5, help="Number of swing trials (>0)")
    parser.add_argument("--static-variance", type=float, default=0.001, help="Static phase per-axis variance")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed")
    parser.add_argument("--out-dir", type=str, default=None, help="Directory for the session log")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        try:
            return int(e.code)
        except (TypeError, ValueError):
            return 2

    def _err(msg: str) -> int:
        print(f"error: {msg}", file=sys.stderr)
        return 2

    if args.swings <= 0:
        return _err("--swings must be > 0")
    if args.latency_ms < 0.0:
        return _err("--latency-ms must be >= 0")
    if args.static_variance < 0.0:
        return _err("--static-variance must be >= 0")

    # Zero retry delays; the simulated clock does not move while waiting.
    sync_config = SyncConfig(retry_delay_s=0.0, no_response_delay_s=0.0)
    try:
        summary = run_simulated_session(
            offset_s=args.offset_ms / 1000.0,
            latency_s=args.latency_ms / 1000.0,
            swings=int(args.swings),
            static_variance=float(args.static_variance),
            seed=int(args.seed),
            out_dir=args.out_dir,
            sync_config=sync_config,
        )
    except (ValueError, RuntimeError, TimeoutError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    for k in [
        "sync_success",
        "attempts",
        "time_offset_ms",
        "round_trip_ms",
        "tap_delta_ms",
        "calibration_phase",
        "calibration_reason",
        "quality",
        "is_valid",
        "gravity_error_percent",
        "consistency",
        "racket_x",
        "log_file",
    ]:
        print(f"{k}: {summary[k]}")

    return 0 if summary["sync_success"] and summary["is_valid"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
