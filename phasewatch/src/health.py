from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol


class Flag(Protocol):
    def is_set(self) -> bool: ...


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, watcher status and Prometheus metrics."""

    ready_flag: Flag
    leader_flag: Flag | None
    status_fn: Callable[[], dict[str, Any]] | None

    def _leader_ready(self) -> bool:
        return self.leader_flag is None or self.leader_flag.is_set()

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._leader_ready():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            ready = self.ready_flag.is_set()
            leader_ready = self._leader_ready()
            if ready and leader_ready:
                self._respond(200, b"ready=true leader=true")
            else:
                ready_text = "true" if ready else "false"
                leader_text = "true" if leader_ready else "false"
                self._respond(503, f"ready={ready_text} leader={leader_text}".encode())
        elif self.path == "/statez":
            if self.status_fn is None:
                self._respond(404)
                return
            body = json.dumps(self.status_fn(), sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("phasewatch.health").debug(fmt, *args)


def make_health_handler(
    ready: Flag,
    leader: Flag | None = None,
    status_fn: Callable[[], dict[str, Any]] | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness flag.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.  *ready* is anything
    with ``is_set()``: a ``threading.Event`` for a single watcher, or the
    all-shards view of a sharded one.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_flag = ready
        leader_flag = leader

    _BoundHealthHandler.status_fn = staticmethod(status_fn) if status_fn else None  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: Flag,
    port: int,
    leader: Flag | None = None,
    status_fn: Callable[[], dict[str, Any]] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, leader=leader, status_fn=status_fn)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
