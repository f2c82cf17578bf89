import sys
import json
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from servesync.config import (
    CalibrationConfig, SyncConfig, config_from_mapping, config_to_dict, load_config,
)
from servesync.linalg import (
    UNIT_X, UNIT_Z, RotationFrame, axis_variance, normalize, perpendicular_axis, power_iteration,
)
from servesync.motion import MotionSample, acceleration_array, angular_velocity_array, peak_angular_speed


def test_motion_sample_coerces_and_round_trips() -> None:
    sample = MotionSample(timestamp=1, acceleration=[0, 0, -9.8], angular_velocity=(1, 2, 2))
    assert sample.timestamp == 1.0
    assert sample.acceleration == (0.0, 0.0, -9.8)
    assert sample.angular_speed == pytest.approx(3.0)
    assert sample.acceleration_magnitude == pytest.approx(9.8)

    restored = MotionSample.from_dict(sample.to_dict())
    assert restored == sample


def test_motion_sample_rejects_wrong_dimension() -> None:
    with pytest.raises(ValueError):
        MotionSample(timestamp=0.0, acceleration=(0.0, 1.0), angular_velocity=(0.0, 0.0, 0.0))


def test_sample_arrays_and_peak() -> None:
    samples = [
        MotionSample(timestamp=i * 0.01, acceleration=(0.0, 0.0, -9.8), angular_velocity=(float(i), 0.0, 0.0))
        for i in range(5)
    ]
    assert acceleration_array(samples).shape == (5, 3)
    assert angular_velocity_array([]).shape == (0, 3)
    assert peak_angular_speed(samples) == pytest.approx(4.0)


def test_config_defaults() -> None:
    sync = SyncConfig()
    cal = CalibrationConfig()
    assert sync.max_round_trip_s == pytest.approx(0.1)
    assert sync.max_attempts == 5
    assert sync.retry_delay_s == pytest.approx(0.3)
    assert sync.no_response_delay_s == pytest.approx(0.5)
    assert cal.required_static_samples == 300
    assert cal.max_static_variance == pytest.approx(0.01)
    assert cal.required_swings == 5
    assert cal.min_swing_samples == 20
    assert cal.min_swing_peak == pytest.approx(10.0)


def test_load_config_overrides(tmp_path) -> None:
    path = tmp_path / "servesync.json"
    path.write_text(json.dumps({"sync": {"max_attempts": 3}, "calibration": {"required_swings": 2}}))
    sync, cal = load_config(str(path))
    assert sync.max_attempts == 3
    assert cal.required_swings == 2
    assert config_to_dict(sync, cal)["sync"]["max_attempts"] == 3


def test_config_rejects_unknown_keys(tmp_path) -> None:
    with pytest.raises(ValueError):
        config_from_mapping({"sync": {"max_attemps": 3}})
    with pytest.raises(ValueError):
        config_from_mapping({"logging": {}})
    with pytest.raises(TypeError):
        config_from_mapping([("sync", {})])

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(str(bad))


def test_normalize_and_variance() -> None:
    assert normalize(np.zeros(3)) is None
    np.testing.assert_allclose(normalize(np.array([0.0, 3.0, 4.0])), [0.0, 0.6, 0.8])
    assert np.all(np.isinf(axis_variance(np.zeros((0, 3)))))
    np.testing.assert_allclose(axis_variance(np.array([[1.0, 0.0, 0.0], [-1.0, 0.0, 0.0]])), [1.0, 0.0, 0.0])


def test_power_iteration_finds_dominant_axis() -> None:
    matrix = np.diag([1.0, 5.0, 2.0])
    axis = power_iteration(matrix, iterations=50, start=np.array([1.0, 1.0, 1.0]))
    assert abs(axis[1]) > 0.999


def test_perpendicular_axis_uses_fallback_near_parallel() -> None:
    x = perpendicular_axis(UNIT_Z, UNIT_X, np.array([0.0, 1.0, 0.0]), component=0)
    np.testing.assert_allclose(x, [0.0, -1.0, 0.0])
    # |axis.x| >= 0.9 switches to the fallback reference
    y = perpendicular_axis(UNIT_X, UNIT_X, np.array([0.0, 1.0, 0.0]), component=0)
    np.testing.assert_allclose(y, [0.0, 0.0, -1.0])


def test_rotation_frame_quaternion_identity() -> None:
    frame = RotationFrame.from_axes(np.array([1.0, 0, 0]), np.array([0, 1.0, 0]), np.array([0, 0, 1.0]))
    assert frame.is_orthonormal()
    np.testing.assert_allclose(frame.quaternion, [1.0, 0.0, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(frame.from_sensor(frame.to_sensor([1.0, 2.0, 3.0])), [1.0, 2.0, 3.0])
