#!/usr/bin/env python3
"""Handheld-side responder for the round-trip clock exchange.

Protocol: one JSON object per line over TCP. Every request carries
`request_id`, `device_id` and `cmd` (plus optional `params`); every reply
echoes `request_id`, names this `device_id` and sets `ack`. Failed requests
carry a numeric `error_code` and an `error_message`.

Commands:
    ping    liveness check
    sync    {"t1": float} -> {"t1", "t2", "t3"} stamped on this device's clock
    origin  {"local_origin", "wallclock_origin", "sync_version"} session anchor
    status  stored origin and number of sync exchanges served
"""

from __future__ import annotations

import argparse
import json
import logging
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import cast


log = logging.getLogger(__name__)

ERROR_INVALID_JSON = 1
ERROR_INVALID_REQUEST = 2
ERROR_UNKNOWN_CMD = 3
ERROR_ORIGIN_ALREADY_SET = 4
ERROR_INTERNAL = 7

MAX_LINE_BYTES = 65536
IDLE_TIMEOUT_SECONDS = 2.0
ACCEPT_POLL_SECONDS = 0.5
BROADCAST_ID = "broadcast"


class RequestError(Exception):
    """A request the responder refuses; becomes an error reply."""

    def __init__(self, code: int, message: str, request_id: str = ""):
        super().__init__(message)
        self.code = code
        self.message = message
        self.request_id = request_id


@dataclass
class ResponderConfig:
    device_id: str = "handheld-01"
    tcp_host: str = "0.0.0.0"
    tcp_port: int = 8654


class ResponderServer:
    """Answers clock exchange requests from the vision unit.

    `sync` requests are stamped with t2 when their bytes arrive and t3 right
    before the reply is written, both from `clock_fn` (monotonic seconds).
    """

    def __init__(
        self,
        config: ResponderConfig,
        clock_fn: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._clock_fn = clock_fn
        self._lock = threading.Lock()
        self._listener: socket.socket | None = None
        self._running = False
        self._ready = threading.Event()

        self._origin: dict[str, object] | None = None
        self._sync_count = 0

        self._handlers: dict[str, Callable[[dict[str, object], float], dict[str, object]]] = {
            "ping": lambda params, received_at: {},
            "sync": self._on_sync,
            "origin": self._on_origin,
            "status": lambda params, received_at: self._on_status(),
        }

    @property
    def address(self) -> tuple[str, int] | None:
        if self._listener is None:
            return None
        return cast(tuple[str, int], self._listener.getsockname())

    @property
    def origin(self) -> dict[str, object] | None:
        with self._lock:
            return dict(self._origin) if self._origin is not None else None

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    # Listener

    def serve_forever(self) -> None:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self._config.tcp_host, self._config.tcp_port))
        listener.listen()
        listener.settimeout(ACCEPT_POLL_SECONDS)
        self._listener = listener
        self._running = True
        self._ready.set()
        log.info("Responder %s listening on %s", self._config.device_id, self.address)

        try:
            while self._running:
                try:
                    conn, peer = listener.accept()
                except socket.timeout:
                    continue
                except OSError:
                    break
                log.debug("Connection from %s", peer)
                threading.Thread(target=self._serve_client, args=(conn,), daemon=True).start()
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self._running = False
        listener, self._listener = self._listener, None
        if listener is not None:
            try:
                listener.close()
            except OSError:
                pass

    # Connection

    def _serve_client(self, conn: socket.socket) -> None:
        pending = b""
        conn.settimeout(IDLE_TIMEOUT_SECONDS)
        with conn:
            try:
                while self._running:
                    try:
                        data = conn.recv(4096)
                    except socket.timeout:
                        return
                    if not data:
                        return
                    received_at = self._clock_fn()
                    pending += data

                    while b"\n" in pending:
                        line, _, pending = pending.partition(b"\n")
                        reply = self._answer(line, received_at)
                        if "t3" in reply:
                            reply["t3"] = float(self._clock_fn())
                        self._write(conn, reply)

                    if len(pending) > MAX_LINE_BYTES:
                        pending = b""
                        self._write(conn, self._error(RequestError(
                            ERROR_INVALID_JSON, "invalid_json: line_too_long")))
            except OSError as exc:
                log.debug("Connection error: %s", exc)

    def _write(self, conn: socket.socket, reply: dict[str, object]) -> None:
        conn.sendall((json.dumps(reply, separators=(",", ":")) + "\n").encode("utf-8"))

    # Requests

    def _answer(self, line: bytes, received_at: float) -> dict[str, object]:
        try:
            request_id, cmd, params = self._parse(line)
        except RequestError as err:
            return self._error(err)

        try:
            fields = self._handlers[cmd](params, received_at)
        except RequestError as err:
            err.request_id = request_id
            return self._error(err)
        except Exception as exc:
            log.exception("Request %s (%s) failed", request_id, cmd)
            return self._error(RequestError(ERROR_INTERNAL, f"internal_error: {exc}", request_id))

        reply: dict[str, object] = {"request_id": request_id, "device_id": self._config.device_id, "ack": True}
        reply.update(fields)
        return reply

    def _parse(self, line: bytes) -> tuple[str, str, dict[str, object]]:
        if not line.strip():
            raise RequestError(ERROR_INVALID_JSON, "invalid_json: empty_line")
        try:
            decoded = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise RequestError(ERROR_INVALID_JSON, "invalid_json") from None
        if not isinstance(decoded, dict):
            raise RequestError(ERROR_INVALID_REQUEST, "invalid_request: expected_object")

        request_id = decoded.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise RequestError(ERROR_INVALID_REQUEST, "invalid_request: missing_or_invalid_request_id")

        target = decoded.get("device_id")
        if target not in (self._config.device_id, BROADCAST_ID):
            raise RequestError(
                ERROR_INVALID_REQUEST,
                f"invalid_request: device_id_mismatch ({target} != {self._config.device_id})",
                request_id,
            )

        cmd = decoded.get("cmd")
        if not isinstance(cmd, str) or cmd not in self._handlers:
            raise RequestError(ERROR_UNKNOWN_CMD, f"unknown_cmd: {cmd}", request_id)

        params = decoded.get("params") or {}
        if not isinstance(params, dict):
            raise RequestError(ERROR_INVALID_REQUEST, "invalid_request: params_must_be_object", request_id)
        return request_id, cmd, cast(dict[str, object], params)

    def _error(self, err: RequestError) -> dict[str, object]:
        return {
            "request_id": err.request_id,
            "device_id": self._config.device_id,
            "ack": False,
            "error_code": err.code,
            "error_message": err.message,
        }

    # Commands

    def _on_sync(self, params: dict[str, object], received_at: float) -> dict[str, object]:
        t1 = params.get("t1")
        if isinstance(t1, bool) or not isinstance(t1, (int, float)):
            raise RequestError(ERROR_INVALID_REQUEST, "invalid_request: sync.t1 must be number")
        with self._lock:
            self._sync_count += 1
        # t3 is restamped just before the reply goes out
        return {"t1": float(t1), "t2": float(received_at), "t3": float(received_at)}

    def _on_origin(self, params: dict[str, object], received_at: float) -> dict[str, object]:
        local_origin = params.get("local_origin")
        wallclock_origin = params.get("wallclock_origin")
        if isinstance(local_origin, bool) or not isinstance(local_origin, (int, float)) \
                or not isinstance(wallclock_origin, str):
            raise RequestError(
                ERROR_INVALID_REQUEST,
                "invalid_request: origin needs local_origin and wallclock_origin",
            )
        with self._lock:
            if self._origin is not None:
                raise RequestError(ERROR_ORIGIN_ALREADY_SET, "origin_already_set")
            self._origin = {
                "local_origin": float(local_origin),
                "wallclock_origin": wallclock_origin,
                "sync_version": str(params.get("sync_version", "1.0")),
            }
        log.info("Session origin received: %s", wallclock_origin)
        return {}

    def _on_status(self) -> dict[str, object]:
        with self._lock:
            return {
                "origin": dict(self._origin) if self._origin is not None else None,
                "sync_count": self._sync_count,
            }


def parse_args(argv: list[str] | None = None) -> ResponderConfig:
    parser = argparse.ArgumentParser(description="Handheld clock sync responder")
    _ = parser.add_argument("--device-id", default="handheld-01", help="Device ID answered by this responder")
    _ = parser.add_argument("--tcp-host", default="0.0.0.0", help="Bind address")
    _ = parser.add_argument("--tcp-port", type=int, default=8654, help="Bind port")

    namespace = parser.parse_args(argv)
    return ResponderConfig(
        device_id=str(namespace.device_id),
        tcp_host=str(namespace.tcp_host),
        tcp_port=int(namespace.tcp_port),
    )


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO)
    server = ResponderServer(parse_args(argv))
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("Responder interrupted")
    finally:
        server.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
