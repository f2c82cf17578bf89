import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from servesync.config import SyncConfig
from servesync.corrections import INSUFFICIENT_EVENTS, CorrectionMethod
from servesync.sim import ManualClock, SimulatedPeer
from servesync.sync import (
    REASON_MAX_ATTEMPTS, REASON_RESET, ClockSyncCoordinator, Device,
    SyncRequest, SyncResponse, TimeOrigin, compute_round_trip,
)

FAST = SyncConfig(retry_delay_s=0.0, no_response_delay_s=0.0)


def _coordinator(clock=None) -> ClockSyncCoordinator:
    return ClockSyncCoordinator(FAST, clock=clock or ManualClock())


def test_compute_round_trip_formula() -> None:
    rtt, offset = compute_round_trip(SyncResponse(t1=0.0, t2=5.02, t3=5.03), t4=0.05)
    assert rtt == pytest.approx(0.04)
    assert offset == pytest.approx(5.0)


def test_synchronize_recovers_exact_offset() -> None:
    clock = ManualClock()
    peer = SimulatedPeer(clock, offset_s=0.25, latency_s=0.01)
    coordinator = _coordinator(clock)

    outcome = coordinator.synchronize(peer).result(timeout=5.0)

    assert outcome.success
    assert outcome.attempts == 1
    assert outcome.time_offset == pytest.approx(0.25, abs=1e-9)
    assert outcome.round_trip == pytest.approx(0.02, abs=1e-9)
    state = coordinator.state
    assert state.is_synchronized
    assert state.time_offset == pytest.approx(0.25, abs=1e-9)
    assert state.round_trip_quality == pytest.approx(0.02, abs=1e-9)
    assert not coordinator.in_progress


def test_round_trip_at_limit_is_accepted() -> None:
    ticks = iter([0.0, 0.1])
    coordinator = ClockSyncCoordinator(FAST, clock=lambda: next(ticks))

    def send(request: SyncRequest) -> SyncResponse:
        return SyncResponse(t1=request.t1, t2=3.05, t3=3.05)

    outcome = coordinator.synchronize(send).result(timeout=5.0)
    assert outcome.success
    assert outcome.round_trip == pytest.approx(0.1)
    assert outcome.time_offset == pytest.approx(3.0)


def test_retries_after_missing_response() -> None:
    clock = ManualClock()
    peer = SimulatedPeer(clock, offset_s=-1.5, drop_first=2)
    outcome = _coordinator(clock).synchronize(peer).result(timeout=5.0)
    assert outcome.success
    assert outcome.attempts == 3
    assert outcome.time_offset == pytest.approx(-1.5, abs=1e-9)


def test_fails_after_five_attempts_without_response() -> None:
    calls = []

    def send(request: SyncRequest):
        calls.append(request)
        return None

    coordinator = _coordinator()
    outcome = coordinator.synchronize(send).result(timeout=5.0)

    assert not outcome.success
    assert outcome.attempts == 5
    assert outcome.reason == REASON_MAX_ATTEMPTS
    assert len(calls) == 5
    assert coordinator.time_offset == 0.0
    assert not coordinator.is_synchronized


def test_high_round_trip_keeps_previous_offset() -> None:
    clock = ManualClock()
    coordinator = _coordinator(clock)
    assert coordinator.synchronize(SimulatedPeer(clock, offset_s=0.4)).result(timeout=5.0).success

    slow_peer = SimulatedPeer(clock, offset_s=9.0, latency_s=0.2)
    outcome = coordinator.synchronize(slow_peer).result(timeout=5.0)

    assert not outcome.success
    assert slow_peer.requests == 5
    assert outcome.time_offset == pytest.approx(0.4, abs=1e-9)
    assert coordinator.time_offset == pytest.approx(0.4, abs=1e-9)
    assert coordinator.is_synchronized


def test_transport_errors_and_mismatched_echo_count_as_no_response() -> None:
    def broken(request: SyncRequest):
        raise ConnectionError("peer unreachable")

    def stale(request: SyncRequest):
        return SyncResponse(t1=request.t1 - 1.0, t2=0.0, t3=0.0)

    assert _coordinator().synchronize(broken).result(timeout=5.0).attempts == 5
    outcome = _coordinator().synchronize(stale).result(timeout=5.0)
    assert not outcome.success
    assert outcome.reason == REASON_MAX_ATTEMPTS


def test_concurrent_callers_share_one_exchange() -> None:
    gate = threading.Event()
    entered = threading.Event()
    calls = []
    clock = ManualClock()

    def send(request: SyncRequest) -> SyncResponse:
        calls.append(request)
        entered.set()
        gate.wait(5.0)
        return SyncResponse(t1=request.t1, t2=request.t1 + 2.0, t3=request.t1 + 2.0)

    coordinator = _coordinator(clock)
    received = []
    both_notified = threading.Event()

    def on_done(outcome) -> None:
        received.append(outcome)
        if len(received) == 2:
            both_notified.set()

    first = coordinator.synchronize(send, callback=on_done)
    assert entered.wait(5.0)
    second = coordinator.synchronize(send, callback=on_done)

    assert second is first
    assert coordinator.in_progress
    gate.set()

    a = first.result(timeout=5.0)
    b = second.result(timeout=5.0)
    assert a is b
    assert a.success
    assert a.time_offset == pytest.approx(2.0)
    assert both_notified.wait(5.0)
    assert len(calls) == 1
    assert received == [a, a]


def test_reset_cancels_in_flight_exchange() -> None:
    gate = threading.Event()
    entered = threading.Event()

    def send(request: SyncRequest) -> SyncResponse:
        entered.set()
        gate.wait(5.0)
        return SyncResponse(t1=request.t1, t2=request.t1 + 1.0, t3=request.t1 + 1.0)

    coordinator = _coordinator()
    received = []
    future = coordinator.synchronize(send, callback=received.append)
    assert entered.wait(5.0)

    coordinator.reset()
    outcome = future.result(timeout=5.0)
    assert not outcome.success
    assert outcome.reason == REASON_RESET

    gate.set()
    # The stale exchange must not touch the fresh state.
    assert not coordinator.is_synchronized
    assert coordinator.time_offset == 0.0
    assert not coordinator.in_progress
    assert len(received) == 1


def test_convert_peer_to_local() -> None:
    clock = ManualClock()
    coordinator = _coordinator(clock)
    assert coordinator.convert_peer_to_local(123.0) is None

    coordinator.synchronize(SimulatedPeer(clock, offset_s=0.25)).result(timeout=5.0)
    assert coordinator.convert_peer_to_local(100.25) == pytest.approx(100.0, abs=1e-9)


def test_origins_are_set_once() -> None:
    clock = ManualClock(start=50.0)
    coordinator = _coordinator(clock)

    origin = coordinator.generate_local_origin()
    clock.advance(1.0)
    assert coordinator.generate_local_origin() is origin
    assert origin.local_origin == 50.0
    assert not coordinator.apply_remote_origin(TimeOrigin(local_origin=1.0, wallclock_origin="x"))

    other = _coordinator()
    remote = TimeOrigin(local_origin=7.0, wallclock_origin="2026-01-01T00:00:00")
    assert other.apply_remote_origin(remote)
    assert other.origin == remote
    assert TimeOrigin.from_dict(remote.to_dict()) == remote

    assert coordinator.set_initial_motion_timestamp(200.0)
    assert not coordinator.set_initial_motion_timestamp(300.0)
    assert coordinator.peer_origin == 200.0


def test_impulse_detection_thresholds() -> None:
    coordinator = _coordinator(ManualClock(start=10.0))
    # No origin yet: audio peaks are ignored
    assert coordinator.detect_audio_peak(0.9, 10.5) is None
    coordinator.generate_local_origin()
    assert coordinator.detect_audio_peak(0.7, 10.5) is None
    audio = coordinator.detect_audio_peak(0.9, 10.5)
    assert audio is not None and audio.peak_time_ms == 500
    assert audio.confidence == pytest.approx(0.9)

    # No peer origin yet: jerks are ignored
    assert coordinator.detect_inertial_jerk((8.0, 0.0, -9.8), (0.0, 0.0, -9.8), 20.0) is None
    coordinator.set_initial_motion_timestamp(20.0)
    assert coordinator.detect_inertial_jerk((8.0, 0.0, -9.8), None, 20.25) is None
    assert coordinator.detect_inertial_jerk((5.0, 0.0, -9.8), (0.0, 0.0, -9.8), 20.25) is None
    jerk = coordinator.detect_inertial_jerk((8.0, 0.0, -9.8), (0.0, 0.0, -9.8), 20.25)
    assert jerk is not None and jerk.peak_time_ms == 250
    assert jerk.confidence == pytest.approx(0.8)

    outcome = coordinator.tap_sync_correction()
    assert outcome.ok
    assert outcome.correction.delta_ms == pytest.approx(250.0)
    assert outcome.correction.confidence == pytest.approx(0.8)
    assert coordinator.current_delta_ms == pytest.approx(250.0)
    assert coordinator.relative_time_ms(20.5, Device.HANDHELD) == 750
    assert coordinator.relative_time_ms(10.5, Device.VISION) == 750


def test_tap_sync_without_events_leaves_delta() -> None:
    coordinator = _coordinator()
    outcome = coordinator.tap_sync_correction()
    assert outcome.reason == INSUFFICIENT_EVENTS
    assert coordinator.current_delta_ms == 0.0
    assert coordinator.corrections == []


def test_linear_drift_correction_updates_delta() -> None:
    coordinator = _coordinator()
    outcome = coordinator.linear_drift_correction([(0.0, 4.0), (1.0, 6.0), (2.0, 8.0)])
    assert outcome.ok
    assert coordinator.current_delta_ms == pytest.approx(4.0)
    assert coordinator.corrections[-1].method == CorrectionMethod.LINEAR_DRIFT


def test_reset_clears_everything() -> None:
    clock = ManualClock()
    coordinator = _coordinator(clock)
    coordinator.generate_local_origin()
    coordinator.set_initial_motion_timestamp(1.0)
    coordinator.synchronize(SimulatedPeer(clock)).result(timeout=5.0)
    coordinator.linear_drift_correction([(0.0, 4.0), (1.0, 6.0), (2.0, 8.0)])

    coordinator.reset()

    assert coordinator.origin is None
    assert coordinator.peer_origin is None
    assert not coordinator.is_synchronized
    assert coordinator.current_delta_ms == 0.0
    assert coordinator.events == []
    assert coordinator.corrections == []
    status = coordinator.status()
    assert status["round_trip"]["attempt_count"] == 0
    assert status["in_progress"] is False
