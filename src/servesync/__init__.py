"""
Vision-side modules for the servesync tennis serve capture system.

Modules:
- motion: Timestamped IMU sample model
- config: Sync and calibration thresholds
- linalg: Vector helpers, power iteration, rotation frames
- corrections: Correlated impulses, tap-sync and linear-drift corrections
- sync: Round-trip clock synchronization coordinator
- calibration: World/racket frame calibration engine
- logger: JSONL session recording
- transport: NDJSON/TCP client for the handheld responder
- session: Capture session wiring sync, calibration and logging
- sim: Synthetic IMU data and simulated peer
"""

from .motion import MotionSample
from .config import SyncConfig, CalibrationConfig, load_config, config_from_mapping
from .linalg import RotationFrame
from .corrections import (
    CorrelatedEvent, Correction, CorrectionOutcome,
    CorrectionMethod, EventKind, tap_sync, linear_drift
)
from .sync import (
    ClockSyncCoordinator, Device, TimeOrigin, SyncRequest,
    SyncResponse, SyncState, SyncOutcome, compute_round_trip
)
from .calibration import (
    CalibrationEngine, CalibrationPhase, CalibrationState,
    CalibrationResult, CalibrationError, compute_calibration
)
from .logger import SessionLogger, load_session_log, list_session_logs
from .transport import TcpSyncTransport
from .session import ServeSession

__all__ = [
    # Motion
    "MotionSample",
    # Config
    "SyncConfig",
    "CalibrationConfig",
    "load_config",
    "config_from_mapping",
    # Linear algebra
    "RotationFrame",
    # Corrections
    "CorrelatedEvent",
    "Correction",
    "CorrectionOutcome",
    "CorrectionMethod",
    "EventKind",
    "tap_sync",
    "linear_drift",
    # Sync
    "ClockSyncCoordinator",
    "Device",
    "TimeOrigin",
    "SyncRequest",
    "SyncResponse",
    "SyncState",
    "SyncOutcome",
    "compute_round_trip",
    # Calibration
    "CalibrationEngine",
    "CalibrationPhase",
    "CalibrationState",
    "CalibrationResult",
    "CalibrationError",
    "compute_calibration",
    # Logger
    "SessionLogger",
    "load_session_log",
    "list_session_logs",
    # Transport
    "TcpSyncTransport",
    # Session
    "ServeSession",
]
