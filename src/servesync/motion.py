"""
Motion sample model shared by synchronization and calibration.

A MotionSample is one timestamped 6-axis IMU reading as delivered by the
acquisition layer. Samples are immutable once created.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Sequence, Tuple

import numpy as np


Vector3 = Tuple[float, float, float]


def _as_vector3(values: Sequence[float], name: str) -> Vector3:
    if len(values) != 3:
        raise ValueError(f"{name} must have 3 components, got {len(values)}")
    return (float(values[0]), float(values[1]), float(values[2]))


def now_iso() -> str:
    return datetime.now().isoformat()


@dataclass(frozen=True)
class MotionSample:
    """Timestamped accelerometer + gyroscope reading."""
    timestamp: float  # monotonic seconds on the producing device
    acceleration: Vector3  # m/s^2
    angular_velocity: Vector3  # rad/s
    wallclock: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", float(self.timestamp))
        object.__setattr__(self, "acceleration", _as_vector3(self.acceleration, "acceleration"))
        object.__setattr__(
            self, "angular_velocity", _as_vector3(self.angular_velocity, "angular_velocity")
        )

    @property
    def acceleration_magnitude(self) -> float:
        return float(np.linalg.norm(self.acceleration))

    @property
    def angular_speed(self) -> float:
        return float(np.linalg.norm(self.angular_velocity))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "wallclock": self.wallclock,
            "acceleration": list(self.acceleration),
            "angular_velocity": list(self.angular_velocity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MotionSample":
        return cls(
            timestamp=data["timestamp"],
            acceleration=data["acceleration"],
            angular_velocity=data["angular_velocity"],
            wallclock=data.get("wallclock") or now_iso(),
        )


def acceleration_array(samples: Sequence[MotionSample]) -> np.ndarray:
    """Nx3 array of acceleration vectors."""
    if not samples:
        return np.zeros((0, 3), dtype=np.float64)
    return np.array([s.acceleration for s in samples], dtype=np.float64)


def angular_velocity_array(samples: Sequence[MotionSample]) -> np.ndarray:
    """Nx3 array of angular velocity vectors."""
    if not samples:
        return np.zeros((0, 3), dtype=np.float64)
    return np.array([s.angular_velocity for s in samples], dtype=np.float64)


def peak_angular_speed(samples: Sequence[MotionSample]) -> float:
    """Largest angular velocity magnitude over a trial (0.0 when empty)."""
    omegas = angular_velocity_array(samples)
    if len(omegas) == 0:
        return 0.0
    return float(np.max(np.linalg.norm(omegas, axis=1)))
