"""
Configuration for clock synchronization and IMU calibration.

All thresholds live here so a session can be tuned from a single JSON file:

    {
        "sync": {"max_round_trip_s": 0.1, "max_attempts": 5},
        "calibration": {"required_static_samples": 300}
    }
"""

import json
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple


@dataclass
class SyncConfig:
    """Round-trip and impulse-sync thresholds."""
    max_round_trip_s: float = 0.100
    max_attempts: int = 5
    retry_delay_s: float = 0.3       # after a round trip above the limit
    no_response_delay_s: float = 0.5  # after a missing/invalid response
    audio_peak_threshold: float = 0.7
    jerk_threshold: float = 5.0
    jerk_confidence_scale: float = 10.0
    drift_min_points: int = 3
    drift_confidence: float = 0.8


@dataclass
class CalibrationConfig:
    """Static/swing phase thresholds and quality constants."""
    required_static_samples: int = 300
    max_static_variance: float = 0.01
    required_swings: int = 5
    min_swing_samples: int = 20
    min_swing_peak: float = 10.0
    pca_motion_threshold: float = 15.0
    min_pca_samples: int = 20
    pca_iterations: int = 24
    min_gravity_magnitude: float = 0.5
    expected_gravity: float = 9.8
    consistency_cv_limit: float = 0.5
    min_quality: float = 0.7
    max_gravity_error_percent: float = 5.0


def _build(cls, values: Mapping[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**dict(values))


def config_from_mapping(data: Mapping[str, Any]) -> Tuple[SyncConfig, CalibrationConfig]:
    """Build both configs from a mapping with optional "sync"/"calibration" sections."""
    if not isinstance(data, Mapping):
        raise TypeError("config must be a mapping")
    extra = set(data) - {"sync", "calibration"}
    if extra:
        raise ValueError(f"Unknown config sections: {sorted(extra)}")
    sync = _build(SyncConfig, data.get("sync") or {})
    calibration = _build(CalibrationConfig, data.get("calibration") or {})
    return sync, calibration


def load_config(path: str) -> Tuple[SyncConfig, CalibrationConfig]:
    """
    Load configuration from a JSON file.

    Args:
        path: Path to the JSON config file

    Returns:
        Tuple of (SyncConfig, CalibrationConfig)

    Raises:
        ValueError: If the file is not valid JSON or contains unknown keys
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON config: {path}") from e
    return config_from_mapping(data)


def config_to_dict(sync: SyncConfig, calibration: CalibrationConfig) -> Dict[str, Any]:
    return {"sync": asdict(sync), "calibration": asdict(calibration)}
