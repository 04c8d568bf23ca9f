from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeVar

from ingress_controller.src.configuration import GlobalSettings
from ingress_controller.src.errors import OperationCancelled
from ingress_controller.src.gateway import GatewayConfig
from ingress_controller.src.ingress import IngressConfig
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.reconciler import BulkSyncResult, ConfigReconciler

T = TypeVar("T")


class SyncLock:
    """Serialise read-modify-write cycles against the shared configuration record.

    Every operation of the wrapped reconciler reads the record, changes a copy
    and writes it back.  Two unsynchronised callers could both read the same
    version and the second write would drop the first caller's change, so all
    of them go through one slot here.

    Waiting honours the caller's ``cancel`` event and ``timeout``: either one
    raises :class:`OperationCancelled` and the reconciler is never invoked.
    """

    def __init__(self, reconciler: ConfigReconciler, poll_interval: float = 0.05) -> None:
        self.reconciler = reconciler
        self.poll_interval = poll_interval
        self._slot = threading.Lock()

    def _acquire(self, cancel: threading.Event | None, timeout: float | None) -> None:
        started = time.monotonic()
        deadline = None if timeout is None else started + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("cancelled while waiting for the sync lock")
            wait = self.poll_interval
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise OperationCancelled("timed out waiting for the sync lock")
                wait = min(wait, left)
            if self._slot.acquire(timeout=wait):
                METRICS.lock_wait_seconds.observe(time.monotonic() - started)
                return

    def _locked(
        self,
        operation: Callable[..., T],
        *args: Any,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> T:
        self._acquire(cancel, timeout)
        try:
            return operation(*args)
        finally:
            self._slot.release()

    def upsert(
        self, ic: IngressConfig, *, cancel: threading.Event | None = None, timeout: float | None = None
    ) -> bool:
        return self._locked(self.reconciler.upsert, ic, cancel=cancel, timeout=timeout)

    def set(
        self,
        ingresses: Iterable[IngressConfig],
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> BulkSyncResult:
        return self._locked(self.reconciler.set, ingresses, cancel=cancel, timeout=timeout)

    def delete(
        self,
        namespace: str,
        name: str,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> bool:
        return self._locked(self.reconciler.delete, namespace, name, cancel=cancel, timeout=timeout)

    def set_config(
        self,
        settings: GlobalSettings,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> bool:
        return self._locked(self.reconciler.set_config, settings, cancel=cancel, timeout=timeout)

    def set_gateway_config(
        self,
        gateway_config: GatewayConfig,
        policy_filters: Mapping[tuple[str, str], Mapping[str, Any]] | None = None,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> bool:
        return self._locked(
            self.reconciler.set_gateway_config,
            gateway_config,
            policy_filters,
            cancel=cancel,
            timeout=timeout,
        )
