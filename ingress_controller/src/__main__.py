from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable

from ingress_controller.src.controller import IngressController
from ingress_controller.src.gateway_controller import GatewayController
from ingress_controller.src.health import start_health_server
from ingress_controller.src.kube import build_clients, load_kube_configuration
from ingress_controller.src.lock import SyncLock
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.reconciler import ConfigReconciler
from ingress_controller.src.registry import DependencyRegistry
from ingress_controller.src.reporter import EventReporter, LogReporter, MultiReporter, StatusReporter
from ingress_controller.src.settings import load_settings
from ingress_controller.src.settings_controller import SettingsController
from ingress_controller.src.store import ConfigMapStore

RUNTIME_VERSION = "0.1.0"
EVENT_COMPONENT = "accessgate-ingress-controller"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"-----BEGIN ([A-Z ]*PRIVATE KEY)-----.*?(?:-----END \1-----|$)", re.DOTALL),
        r"[REDACTED \1]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _run_component(
    name: str, run: Callable[[threading.Event], None], shutdown_event: threading.Event
) -> threading.Thread:
    """Run a controller loop on a daemon thread; any exit before shutdown stops the process."""

    def _target() -> None:
        try:
            run(shutdown_event)
            if not shutdown_event.is_set():
                logging.getLogger(__name__).error("%s exited without a stop signal; terminating process", name)
        except Exception:
            logging.getLogger(__name__).exception("%s crashed", name)
        finally:
            shutdown_event.set()

    thread = threading.Thread(target=_target, name=name, daemon=True)
    thread.start()
    return thread


def main() -> None:
    """Controller entrypoint: configure logging, wire the controllers, and run until signalled."""
    configure_logging()
    settings = load_settings()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()

    store = ConfigMapStore(
        clients.core,
        namespace=settings.config_namespace,
        name=settings.config_name,
        key=settings.config_key,
    )
    reconciler = ConfigReconciler(store, debug_admin_route=settings.debug_admin_route)
    sync = SyncLock(reconciler, poll_interval=settings.lock_poll_interval_ms / 1000)

    reporters: list[StatusReporter] = [LogReporter()]
    if settings.post_ingress_events:
        reporters.append(EventReporter(clients.core, EVENT_COMPONENT))
    reporter = MultiReporter(reporters)

    shutdown_event = threading.Event()
    ready_checks: list[Callable[[], bool]] = []
    components: list[tuple[str, Callable[[threading.Event], None], Callable[[], None]]] = []

    if settings.enable_ingress:
        ingress_controller = IngressController(
            clients, sync, DependencyRegistry(), reporter, settings
        )
        ready_checks.append(lambda: ingress_controller.gate.succeeded)
        components.append(
            ("ingress-controller", ingress_controller.run_forever, ingress_controller.request_stop)
        )
    if settings.enable_gateway_api:
        gateway_controller = GatewayController(clients, sync, settings)
        components.append(
            ("gateway-controller", gateway_controller.run_forever, gateway_controller.request_stop)
        )
    if settings.settings_name:
        settings_controller = SettingsController(clients, sync, settings)
        components.append(
            ("settings-controller", settings_controller.run_forever, settings_controller.request_stop)
        )

    health_server = start_health_server(
        ready_checks=tuple(ready_checks),
        port=settings.health_port,
        config_dump=lambda: reconciler.load().dumps(),
    )

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    threads = [_run_component(name, run, shutdown_event) for name, run, _ in components]
    while not shutdown_event.is_set():
        shutdown_event.wait(timeout=1)

    for _, _, request_stop in components:
        request_stop()
    for thread in threads:
        thread.join(timeout=45)

    health_server.shutdown()
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
