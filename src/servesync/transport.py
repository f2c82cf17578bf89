"""
NDJSON-over-TCP client for the handheld responder.

Each call opens a connection, writes one request line and reads one reply
line. `TcpSyncTransport` wraps the `sync` command as the round-trip primitive
expected by `ClockSyncCoordinator.synchronize()`.

CLI:
    python -m servesync.transport --ip 192.168.0.5 --device-id handheld-01 ping
    python -m servesync.transport --ip 192.168.0.5 --device-id handheld-01 sync
"""

import argparse
import json
import logging
import socket
import sys
import uuid
from typing import Any, Dict, List, Optional

from .config import SyncConfig
from .sync import ClockSyncCoordinator, SyncOutcome, SyncRequest, SyncResponse, TimeOrigin

log = logging.getLogger(__name__)

DEFAULT_PORT = 8654
READ_CHUNK = 4096


def _read_reply(sock: socket.socket) -> bytes:
    """Collect bytes until the first newline; the newline is not returned."""
    received = bytearray()
    while True:
        chunk = sock.recv(READ_CHUNK)
        if not chunk:
            raise ConnectionError("Peer closed the connection before replying")
        received.extend(chunk)
        end = received.find(b"\n")
        if end >= 0:
            return bytes(received[:end])


def send_request(ip: str, port: int, request_dict: Dict[str, Any], timeout: float = 5.0) -> Dict[str, Any]:
    """
    Send one request and return the decoded reply.

    A request_id is generated when missing.

    Raises:
        TypeError: If request_dict is not a dict
        ValueError: If device_id is missing or the reply is not JSON
        OSError: On connection failure or timeout
    """
    if not isinstance(request_dict, dict):
        raise TypeError("request_dict must be a dict")
    if not request_dict.get("device_id"):
        raise ValueError("request must include device_id")

    request = {**request_dict, "request_id": request_dict.get("request_id") or str(uuid.uuid4())}
    line = json.dumps(request, separators=(",", ":")) + "\n"

    with socket.create_connection((ip, port), timeout=timeout) as sock:
        sock.settimeout(timeout)
        sock.sendall(line.encode("utf-8"))
        raw = _read_reply(sock)

    try:
        reply = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid JSON from peer: {raw!r}") from e
    if not isinstance(reply, dict):
        raise ValueError(f"Unexpected reply from peer: {reply!r}")
    return reply


def _command(cmd: str, device_id: str, params: Optional[Dict[str, Any]] = None,
             request_id: Optional[str] = None) -> Dict[str, Any]:
    request: Dict[str, Any] = {"cmd": cmd, "device_id": device_id}
    if params is not None:
        request["params"] = params
    if request_id:
        request["request_id"] = request_id
    return request


def ping(ip: str, port: int, device_id: str, request_id: Optional[str] = None, timeout: float = 5.0) -> Dict[str, Any]:
    return send_request(ip, port, _command("ping", device_id, request_id=request_id), timeout=timeout)


def request_sync(ip: str, port: int, device_id: str, t1: float,
                 request_id: Optional[str] = None, timeout: float = 2.0) -> Dict[str, Any]:
    request = _command("sync", device_id, {"t1": float(t1)}, request_id)
    return send_request(ip, port, request, timeout=timeout)


def send_origin(ip: str, port: int, device_id: str, origin: TimeOrigin,
                request_id: Optional[str] = None, timeout: float = 5.0) -> Dict[str, Any]:
    request = _command("origin", device_id, origin.to_dict(), request_id)
    return send_request(ip, port, request, timeout=timeout)


def parse_sync_response(resp: Dict[str, Any]) -> Optional[SyncResponse]:
    """t1/t2/t3 from an acknowledged sync reply, or None."""
    if not isinstance(resp, dict) or resp.get("ack") is not True:
        return None
    try:
        return SyncResponse(t1=float(resp["t1"]), t2=float(resp["t2"]), t3=float(resp["t3"]))
    except (KeyError, TypeError, ValueError):
        return None


class TcpSyncTransport:
    """
    Round-trip transport primitive backed by the `sync` command.

    Connection failures, timeouts and malformed or refused replies all come
    back as None so the coordinator's retry loop handles them.
    """

    def __init__(self, ip: str, port: int = DEFAULT_PORT, device_id: str = "handheld-01", timeout: float = 2.0):
        self.ip = ip
        self.port = port
        self.device_id = device_id
        self.timeout = timeout

    def __call__(self, request: SyncRequest) -> Optional[SyncResponse]:
        try:
            reply = request_sync(
                self.ip, self.port, self.device_id, request.t1,
                request_id=request.request_id, timeout=self.timeout,
            )
        except (OSError, ValueError) as e:
            log.warning("Sync request to %s:%d failed: %s", self.ip, self.port, e)
            return None
        parsed = parse_sync_response(reply)
        if parsed is None:
            log.warning("Sync request %s refused: %s", request.request_id, reply.get("error_message"))
        return parsed


def _outcome_to_dict(outcome: SyncOutcome) -> Dict[str, Any]:
    return {
        "ack": outcome.success,
        "attempts": outcome.attempts,
        "time_offset_ms": outcome.time_offset * 1000.0,
        "round_trip_ms": outcome.round_trip * 1000.0 if outcome.round_trip is not None else None,
        "reason": outcome.reason,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m servesync.transport", description="Handheld sync client (NDJSON over TCP)")
    parser.add_argument("--ip", required=True, help="Handheld responder address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Handheld responder port (default {DEFAULT_PORT})")
    parser.add_argument("--device-id", dest="device_id", required=True, help="Handheld device ID (e.g., handheld-01)")
    parser.add_argument("--request-id", dest="request_id", default=None, help="request_id for ping/origin")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="cmd", required=True)
    sub.add_parser("ping", help="Check that the responder is alive")
    sub.add_parser("origin", help="Create a session time origin and send it")
    sync_p = sub.add_parser("sync", help="Run the round-trip clock synchronization")
    sync_p.add_argument("--max-attempts", type=int, default=SyncConfig.max_attempts, help="Attempt ceiling")
    sync_p.add_argument("--max-rtt-ms", type=float, default=SyncConfig.max_round_trip_s * 1000.0,
                        help="Largest acceptable round trip (ms)")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        if args.cmd == "ping":
            reply = ping(args.ip, args.port, device_id=args.device_id, request_id=args.request_id)
        elif args.cmd == "origin":
            origin = ClockSyncCoordinator().generate_local_origin()
            reply = send_origin(args.ip, args.port, device_id=args.device_id, origin=origin,
                                request_id=args.request_id)
        else:
            config = SyncConfig(max_attempts=args.max_attempts, max_round_trip_s=args.max_rtt_ms / 1000.0)
            transport = TcpSyncTransport(args.ip, args.port, device_id=args.device_id)
            reply = _outcome_to_dict(ClockSyncCoordinator(config).synchronize(transport).result())
    except (OSError, ValueError) as e:
        print(json.dumps({"error": str(e)}))
        return 2

    print(json.dumps(reply))
    return 0 if reply.get("ack") is True else 1


if __name__ == "__main__":
    sys.exit(main())
