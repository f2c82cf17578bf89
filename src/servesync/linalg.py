"""
Fixed-size 3D linear algebra used by the calibration engine.

Provides:
- Vector helpers (normalize, axis-safe cross products)
- Population variance / covariance of Nx3 sample sets
- Power iteration for the dominant eigenvector of a 3x3 matrix
- RotationFrame: an orthonormal 3x3 frame with quaternion export
"""

import numpy as np
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from scipy.spatial.transform import Rotation


EPSILON = 1e-9

UNIT_X = np.array([1.0, 0.0, 0.0])
UNIT_Y = np.array([0.0, 1.0, 0.0])
UNIT_Z = np.array([0.0, 0.0, 1.0])


def normalize(v: np.ndarray) -> Optional[np.ndarray]:
    """Return v / |v|, or None when |v| is too small to define a direction."""
    v = np.asarray(v, dtype=np.float64)
    length = float(np.linalg.norm(v))
    if length < EPSILON:
        return None
    return v / length


def axis_variance(points: np.ndarray) -> np.ndarray:
    """Per-axis population variance of an Nx3 array."""
    points = np.asarray(points, dtype=np.float64)
    if len(points) == 0:
        return np.full(3, np.inf)
    return np.var(points, axis=0)


def covariance(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Population covariance of an Nx3 point set.

    Args:
        points: Nx3 array

    Returns:
        Tuple of (mean vector, 3x3 covariance matrix)
    """
    points = np.asarray(points, dtype=np.float64)
    mean = np.mean(points, axis=0)
    centered = points - mean
    cov = centered.T @ centered / float(len(points))
    return mean, cov


def power_iteration(
    matrix: np.ndarray,
    iterations: int = 24,
    start: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Dominant eigenvector of a symmetric 3x3 matrix by repeated multiplication.

    The current estimate is kept when a product collapses to zero, so a zero
    matrix returns the start vector unchanged.
    """
    e = np.array(UNIT_X if start is None else start, dtype=np.float64)
    for _ in range(int(iterations)):
        product = matrix @ e
        length = float(np.linalg.norm(product))
        if length < EPSILON:
            break
        e = product / length
    return e


def perpendicular_axis(axis: np.ndarray, primary: np.ndarray, fallback: np.ndarray,
                       component: int) -> Optional[np.ndarray]:
    """
    Unit vector orthogonal to `axis`, built as normalize(reference x axis).

    `primary` is used unless |axis[component]| >= 0.9 (near parallel), in which
    case `fallback` is crossed instead.
    """
    reference = primary if abs(float(axis[component])) < 0.9 else fallback
    return normalize(np.cross(reference, axis))


@dataclass(frozen=True, eq=False)
class RotationFrame:
    """Orthonormal frame whose columns are the frame axes in sensor coordinates."""
    matrix: np.ndarray  # 3x3

    @classmethod
    def from_axes(cls, x: np.ndarray, y: np.ndarray, z: np.ndarray) -> "RotationFrame":
        matrix = np.column_stack([x, y, z]).astype(np.float64)
        matrix.setflags(write=False)
        return cls(matrix=matrix)

    @property
    def x_axis(self) -> np.ndarray:
        return self.matrix[:, 0]

    @property
    def y_axis(self) -> np.ndarray:
        return self.matrix[:, 1]

    @property
    def z_axis(self) -> np.ndarray:
        return self.matrix[:, 2]

    def is_orthonormal(self, tol: float = 1e-6) -> bool:
        m = self.matrix
        return bool(
            np.allclose(m.T @ m, np.eye(3), atol=tol)
            and abs(np.linalg.det(m) - 1.0) < tol
        )

    def to_sensor(self, v: np.ndarray) -> np.ndarray:
        """Express a frame-coordinate vector in sensor coordinates."""
        return self.matrix @ np.asarray(v, dtype=np.float64)

    def from_sensor(self, v: np.ndarray) -> np.ndarray:
        """Express a sensor-coordinate vector in frame coordinates."""
        return self.matrix.T @ np.asarray(v, dtype=np.float64)

    @property
    def quaternion(self) -> np.ndarray:
        """Frame orientation as [w, x, y, z]."""
        quat = Rotation.from_matrix(self.matrix).as_quat()  # [x, y, z, w]
        return np.array([quat[3], quat[0], quat[1], quat[2]])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matrix": self.matrix.tolist(),
            "quaternion": self.quaternion.tolist(),
        }
