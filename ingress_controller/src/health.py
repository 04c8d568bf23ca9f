from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

ReadyCheck = Callable[[], bool]
ConfigDump = Callable[[], str]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, metrics and the committed configuration."""

    ready_checks: tuple[ReadyCheck, ...]
    config_dump: ConfigDump | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _debug_config(self) -> None:
        if self.config_dump is None:
            self._respond(404)
            return
        try:
            body = self.config_dump().encode()
        except Exception:
            logging.getLogger(__name__).exception("Reading configuration for /debug/config failed")
            self._respond(503, b"configuration unavailable")
            return
        self._respond(200, body, "application/json")

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if all(check() for check in self.ready_checks):
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        elif self.path == "/debug/config":
            self._debug_config()
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("ingress_controller.health").debug(fmt, *args)


def make_health_handler(
    ready_checks: tuple[ReadyCheck, ...], config_dump: ConfigDump | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness checks.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.ready_checks = tuple(ready_checks)
    _BoundHealthHandler.config_dump = staticmethod(config_dump) if config_dump else None
    return _BoundHealthHandler


def start_health_server(
    ready_checks: tuple[ReadyCheck, ...],
    port: int,
    config_dump: ConfigDump | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready_checks, config_dump=config_dump)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
