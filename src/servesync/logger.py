"""
JSONL session recording for a capture session.

One file per session:
- a header line (schema version, session start, session name)
- "sample" lines: motion samples tagged with the producing device
- "event" lines: time origin, sync outcomes, corrections, calibration states
- a footer line with sample/event totals

All writes go through one background thread so callers on the sync or
calibration worker threads never block on disk I/O.
"""

import json
import logging
import queue
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .motion import MotionSample

log = logging.getLogger(__name__)

_STOP = object()


def _stamp() -> str:
    return datetime.now().isoformat()


class SessionLogger:
    """
    Thread-safe JSONL recorder.

    Usage:
        recorder = SessionLogger(log_dir="./logs")
        path = recorder.start_recording("serve-01")
        recorder.log_sample(sample, device="handheld")
        recorder.log_event("sync_outcome", {"success": True})
        summary = recorder.stop_recording()
    """

    SCHEMA_VERSION = "1.0"

    def __init__(self, log_dir: str = "./logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._writer: Optional[threading.Thread] = None
        self._session_start: Optional[str] = None
        self._samples = 0
        self._events = 0

    # Recording lifecycle

    def start_recording(self, session_name: Optional[str] = None) -> str:
        """
        Open a new session file and write its header.

        Args:
            session_name: File stem (default: current date and time)

        Returns:
            Path of the session file

        Raises:
            RuntimeError: If a session is already being recorded
        """
        with self._lock:
            if self._path is not None:
                raise RuntimeError("Recording already in progress")

            self._session_start = _stamp()
            name = session_name or datetime.now().strftime("%Y%m%d_%H%M%S")
            path = self.log_dir / f"{name}.jsonl"
            handle = open(path, "w", encoding="utf-8")

            self._path = path
            self._samples = 0
            self._events = 0
            self._queue = queue.Queue()
            self._queue.put({
                "_type": "header",
                "schema_version": self.SCHEMA_VERSION,
                "session_name": name,
                "session_start": self._session_start,
            })
            self._writer = threading.Thread(
                target=self._drain, args=(handle, self._queue), name="session-log", daemon=True
            )
            self._writer.start()

        log.info("Recording session to %s", path)
        return str(path)

    def stop_recording(self) -> Dict[str, Any]:
        """
        Write the footer, flush pending lines and close the file.

        Returns:
            Summary of the session, or {"status": "not_recording"}
        """
        with self._lock:
            if self._path is None:
                return {"status": "not_recording"}

            session_end = _stamp()
            self._queue.put({
                "_type": "footer",
                "session_end": session_end,
                "total_samples": self._samples,
                "total_events": self._events,
            })
            self._queue.put(_STOP)
            writer = self._writer

            summary = {
                "log_file": str(self._path),
                "start_time": self._session_start,
                "end_time": session_end,
                "total_samples": self._samples,
                "total_events": self._events,
            }
            self._path = None
            self._writer = None

        if writer is not None:
            writer.join(timeout=5.0)
        return summary

    # Entries

    def log_sample(self, sample: MotionSample, device: str) -> None:
        """
        Queue one motion sample.

        Raises:
            RuntimeError: If no session is being recorded
        """
        self._enqueue("sample", device=device, data=sample.to_dict())

    def log_event(self, event_type: str, event_data: Dict[str, Any]) -> None:
        """
        Queue one session event.

        Raises:
            RuntimeError: If no session is being recorded
        """
        self._enqueue("event", event_type=event_type, data=event_data)

    def _enqueue(self, kind: str, **fields: Any) -> None:
        with self._lock:
            if self._path is None:
                raise RuntimeError("Not currently recording")
            if kind == "sample":
                self._samples += 1
            else:
                self._events += 1
            self._queue.put({"_type": kind, "timestamp": _stamp(), **fields})

    @staticmethod
    def _drain(handle, entries: "queue.Queue[Any]") -> None:
        with handle:
            while True:
                entry = entries.get()
                if entry is _STOP:
                    break
                handle.write(json.dumps(entry) + "\n")
                handle.flush()

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._path is not None

    @property
    def current_log_file(self) -> Optional[str]:
        with self._lock:
            return str(self._path) if self._path is not None else None


def load_session_log(path: str) -> Dict[str, Any]:
    """
    Read a session file back.

    Returns:
        Dict with "header", "footer", "samples" (each {"device", "sample"})
        and "events" (raw event entries)

    Raises:
        ValueError: If a line is not valid JSON
    """
    parsed: Dict[str, Any] = {"header": None, "footer": None, "samples": [], "events": []}

    with open(path, "r", encoding="utf-8") as fp:
        for line_no, raw in enumerate(fp, start=1):
            if not raw.strip():
                continue
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON at line {line_no} in {path}") from e

            kind = entry.get("_type")
            if kind in ("header", "footer"):
                parsed[kind] = entry
            elif kind == "sample":
                parsed["samples"].append({
                    "device": entry.get("device"),
                    "sample": MotionSample.from_dict(entry["data"]),
                })
            elif kind == "event":
                parsed["events"].append(entry)

    return parsed


def _describe_log(path: Path) -> Dict[str, Any]:
    stat = path.stat()
    info: Dict[str, Any] = {
        "path": str(path),
        "name": path.stem,
        "size_bytes": stat.st_size,
        "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
        "schema_version": "unknown",
        "session_start": None,
    }
    try:
        with open(path, "r", encoding="utf-8") as fp:
            header = json.loads(fp.readline())
    except (OSError, json.JSONDecodeError):
        return info
    if isinstance(header, dict) and header.get("_type") == "header":
        info["schema_version"] = header.get("schema_version")
        info["session_start"] = header.get("session_start")
    return info


def list_session_logs(log_dir: str = "./logs") -> List[Dict[str, Any]]:
    """Describe every session file in log_dir, newest name first."""
    root = Path(log_dir)
    if not root.exists():
        return []
    return [_describe_log(p) for p in sorted(root.glob("*.jsonl"), reverse=True)]
