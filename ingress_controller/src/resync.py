from __future__ import annotations

import logging
import random
import threading

from kubernetes.client import ApiException

from ingress_controller.src.errors import OperationCancelled, ReconcileError
from ingress_controller.src.kube import KubeClients
from ingress_controller.src.lock import SyncLock
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.settings import ControllerSettings


class PeriodicController:
    """Base for controllers that recompute their whole view on a fixed interval.

    Subclasses set ``kind`` and implement :meth:`reconcile` and
    :meth:`resync_seconds`.
    """

    kind = ""

    def __init__(
        self,
        clients: KubeClients,
        sync: SyncLock,
        settings: ControllerSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.sync = sync
        self.settings = settings
        self.logger = logger or logging.getLogger(type(self).__module__)
        self._external_stop = threading.Event()

    def reconcile(self, cancel: threading.Event | None = None) -> bool:
        raise NotImplementedError

    def resync_seconds(self) -> int:
        raise NotImplementedError

    def request_stop(self) -> None:
        self._external_stop.set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Resync every :meth:`resync_seconds` until shutdown.

        Failed passes back off with jitter; 401/403 responses are treated as a
        misconfiguration and stop the loop.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        backoff_seconds = 1
        while not (stop.is_set() or self._external_stop.is_set()):
            wait = float(self.resync_seconds())
            try:
                self.reconcile(cancel=stop)
                backoff_seconds = 1
            except OperationCancelled:
                self.logger.warning("%s pass cancelled before its configuration was committed", self.kind)
            except ApiException as exc:
                METRICS.watch_errors_total.labels(resource=self.kind).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API denied %s access (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    stop.set()
                    return
                self.logger.exception("%s pass failed", self.kind)
                wait = min(wait, backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except ReconcileError:
                METRICS.reconciles_total.labels(kind=self.kind, outcome="failed").inc()
                self.logger.exception("%s configuration was not committed", self.kind)
                wait = min(wait, backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            stop.wait(timeout=wait)
