from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from ingress_controller.src.metrics import METRICS

REASON_UPDATED = "Updated"
REASON_UPDATE_ERROR = "UpdateError"
MESSAGE_UPDATED = "config updated"


class StatusReporter(Protocol):
    def reconciled(self, ingress: Any) -> None: ...

    def not_reconciled(self, ingress: Any, reason: Exception) -> None: ...

    def deleted(self, namespace: str, name: str, reason: str) -> None: ...


class LogReporter:
    """Report outcomes as log lines and reconcile counters."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def reconciled(self, ingress: Any) -> None:
        METRICS.reconciles_total.labels(kind="Ingress", outcome="reconciled").inc()
        self.logger.info("Ingress %s/%s reconciled", ingress.metadata.namespace, ingress.metadata.name)

    def not_reconciled(self, ingress: Any, reason: Exception) -> None:
        METRICS.reconciles_total.labels(kind="Ingress", outcome="failed").inc()
        self.logger.error(
            "Ingress %s/%s not reconciled: %s", ingress.metadata.namespace, ingress.metadata.name, reason
        )

    def deleted(self, namespace: str, name: str, reason: str) -> None:
        METRICS.reconciles_total.labels(kind="Ingress", outcome="deleted").inc()
        self.logger.info("Ingress %s/%s removed from configuration: %s", namespace, name, reason)


class EventReporter:
    """Post Kubernetes Events on the Ingress so ``kubectl describe`` shows the outcome."""

    def __init__(self, core_api: CoreV1Api, component: str) -> None:
        self.core_api = core_api
        self.component = component

    def _post(self, ingress: Any, event_type: str, reason: str, message: str) -> None:
        metadata = ingress.metadata
        now = datetime.now(UTC)
        event = CoreV1Event(
            metadata=V1ObjectMeta(generate_name=f"{metadata.name}.", namespace=metadata.namespace),
            involved_object=V1ObjectReference(
                api_version="networking.k8s.io/v1",
                kind="Ingress",
                name=metadata.name,
                namespace=metadata.namespace,
                uid=metadata.uid,
                resource_version=metadata.resource_version,
            ),
            reason=reason,
            message=message[:1024],
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        self.core_api.create_namespaced_event(namespace=metadata.namespace, body=event)

    def reconciled(self, ingress: Any) -> None:
        self._post(ingress, "Normal", REASON_UPDATED, MESSAGE_UPDATED)

    def not_reconciled(self, ingress: Any, reason: Exception) -> None:
        self._post(ingress, "Warning", REASON_UPDATE_ERROR, str(reason))

    def deleted(self, namespace: str, name: str, reason: str) -> None:
        # The object is usually gone; there is nothing to attach an event to.
        return None


class MultiReporter:
    """Dispatch every outcome to several reporters; a failing reporter is logged, not raised."""

    def __init__(self, reporters: Sequence[StatusReporter], logger: logging.Logger | None = None) -> None:
        self.reporters = list(reporters)
        self.logger = logger or logging.getLogger(__name__)

    def _each(self, method: str, *args: Any) -> None:
        for reporter in self.reporters:
            try:
                getattr(reporter, method)(*args)
            except ApiException:
                self.logger.exception("Posting %s status update via %s failed", method, type(reporter).__name__)

    def reconciled(self, ingress: Any) -> None:
        self._each("reconciled", ingress)

    def not_reconciled(self, ingress: Any, reason: Exception) -> None:
        self._each("not_reconciled", ingress, reason)

    def deleted(self, namespace: str, name: str, reason: str) -> None:
        self._each("deleted", namespace, name, reason)
