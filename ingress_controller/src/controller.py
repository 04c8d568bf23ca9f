from __future__ import annotations

import logging
import queue
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from ingress_controller.src.annotations import annotation_secret_names
from ingress_controller.src.errors import OperationCancelled, ReconcileError, SourceError, StoreError
from ingress_controller.src.ingress import (
    SERVICE_NAME_LABEL,
    EndpointGroup,
    IngressConfig,
    aggregate_endpoint_slices,
    backend_service_names,
    tls_secret_names,
)
from ingress_controller.src.kube import (
    KubeClients,
    current_load_balancer_ingress,
    service_load_balancer_ingress,
)
from ingress_controller.src.lock import SyncLock
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.once import ReconcileGate
from ingress_controller.src.registry import DependencyRegistry, ObjectKey
from ingress_controller.src.reporter import StatusReporter
from ingress_controller.src.settings import ControllerSettings

INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
DEFAULT_CLASS_ANNOTATION = "ingressclass.kubernetes.io/is-default-class"

INGRESS = "Ingress"
SERVICE = "Service"
ENDPOINT_SLICE = "EndpointSlice"
SECRET = "Secret"


@dataclass(frozen=True)
class WatchTarget:
    """One list/watch stream: a resource kind and the list call that feeds it."""

    kind: str
    list_fn: Callable[..., Any]
    namespace: str | None = None

    def list_kwargs(self) -> dict[str, Any]:
        return {"namespace": self.namespace} if self.namespace else {}


class IngressController:
    """Keeps Ingress-derived routes in the shared configuration up to date.

    Watch events for Ingresses, Services, EndpointSlices and Secrets are mapped to
    the Ingresses that must be recomputed (directly, or through the dependency
    registry) and queued for a bounded pool of workers.  Each worker first
    waits on the initial-sync gate, so no per-object reconcile runs before the
    full listing has seeded the configuration; otherwise objects that simply
    had not been observed yet could be deleted.

    Key internal state:
        ``_pending``
            Ingress keys queued but not yet picked up, so a burst of events
            for one object collapses into a single reconcile.
        ``_attempts``
            Consecutive failure counters per key, driving retry backoff.
    """

    def __init__(
        self,
        clients: KubeClients,
        sync: SyncLock,
        registry: DependencyRegistry,
        reporter: StatusReporter,
        settings: ControllerSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.sync = sync
        self.registry = registry
        self.reporter = reporter
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)

        self.gate = ReconcileGate(self._initial_sync, name="ingress-initial-sync")
        self._queue: queue.Queue[tuple[str, str]] = queue.Queue()
        self._pending: set[tuple[str, str]] = set()
        self._attempts: dict[tuple[str, str], int] = {}
        self._pending_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def _watches_namespace(self, namespace: str) -> bool:
        return not self.settings.watch_namespaces or namespace in self.settings.watch_namespaces

    def list_ingress_classes(self) -> list[Any]:
        classes = self.clients.networking.list_ingress_class().items or []
        return [ic for ic in classes if ic.spec.controller == self.settings.ingress_controller_name]

    def is_managed(self, ingress: Any, ingress_classes: list[Any]) -> tuple[bool, str]:
        """Return whether this controller owns ``ingress``, and why not if it does not.

        ``ingress_classes`` must already be filtered to this controller's classes.
        """
        metadata = ingress.metadata
        if not self._watches_namespace(metadata.namespace):
            return False, f"namespace {metadata.namespace} is not watched by this controller"

        class_name = ingress.spec.ingress_class_name
        if not class_name:
            class_name = (metadata.annotations or {}).get(INGRESS_CLASS_ANNOTATION)
            if class_name:
                self.logger.info(
                    "Ingress %s/%s uses deprecated annotation %s, use spec.ingressClassName instead",
                    metadata.namespace,
                    metadata.name,
                    INGRESS_CLASS_ANNOTATION,
                )

        if not class_name:
            for ingress_class in ingress_classes:
                annotations = ingress_class.metadata.annotations or {}
                if annotations.get(DEFAULT_CLASS_ANNOTATION, "").lower() == "true":
                    return True, ""
            return False, (
                "the ingress did not specify an ingressClass, and no ingressClass managed by "
                f"controller {self.settings.ingress_controller_name} is marked as default"
            )

        if any(ingress_class.metadata.name == class_name for ingress_class in ingress_classes):
            return True, ""
        return False, (
            f"IngressClass {class_name} not found or is not assigned to controller "
            f"{self.settings.ingress_controller_name}"
        )

    # ------------------------------------------------------------------
    # Dependency fetching
    # ------------------------------------------------------------------

    def _read_optional(self, read_fn: Callable[..., Any], name: str, namespace: str) -> Any | None:
        try:
            return read_fn(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _endpoint_groups(self, namespace: str, service_name: str) -> list[EndpointGroup]:
        response = self.clients.discovery.list_namespaced_endpoint_slice(
            namespace=namespace, label_selector=f"{SERVICE_NAME_LABEL}={service_name}"
        )
        return aggregate_endpoint_slices(response.items or [])

    def fetch(self, ingress: Any) -> IngressConfig:
        """Fetch every object ``ingress`` references and rebuild its registry edges.

        Edges are recorded before the objects are read, so a referenced Service
        or Secret that does not exist yet still requeues the Ingress once it is
        created.
        """
        namespace = ingress.metadata.namespace
        key = ObjectKey.of(ingress, INGRESS)
        self.registry.delete_cascade(key)
        if self.settings.status_service is not None:
            # Load balancer address changes on the proxy Service refresh the status.
            self.registry.add(key, ObjectKey(SERVICE, *self.settings.status_service))

        services: dict[tuple[str, str], Any] = {}
        endpoints: dict[tuple[str, str], list[EndpointGroup]] = {}
        secrets: dict[tuple[str, str], Any] = {}

        for name in backend_service_names(ingress):
            self.registry.add(key, ObjectKey(SERVICE, namespace, name))
            service = self._read_optional(self.clients.core.read_namespaced_service, name, namespace)
            if service is None:
                raise SourceError(
                    f"ingress {namespace}/{ingress.metadata.name}: service {namespace}/{name} not found"
                )
            services[(namespace, name)] = service
            if service.spec.type != "ExternalName":
                endpoints[(namespace, name)] = self._endpoint_groups(namespace, name)

        secret_names = set(tls_secret_names(ingress))
        secret_names.update(
            annotation_secret_names(ingress.metadata.annotations, self.settings.annotation_prefix)
        )
        for name in sorted(secret_names):
            self.registry.add(key, ObjectKey(SECRET, namespace, name))
            secret = self._read_optional(self.clients.core.read_namespaced_secret, name, namespace)
            if secret is None:
                raise SourceError(
                    f"ingress {namespace}/{ingress.metadata.name}: secret {namespace}/{name} not found"
                )
            secrets[(namespace, name)] = secret

        return IngressConfig(
            ingress=ingress,
            annotation_prefix=self.settings.annotation_prefix,
            services=services,
            secrets=secrets,
            endpoints=endpoints,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _list_ingresses(self) -> list[Any]:
        networking = self.clients.networking
        if not self.settings.watch_namespaces:
            return list(networking.list_ingress_for_all_namespaces().items or [])
        items: list[Any] = []
        for namespace in self.settings.watch_namespaces:
            items.extend(networking.list_namespaced_ingress(namespace=namespace).items or [])
        return items

    def _initial_sync(self, cancel: threading.Event) -> None:
        """List every managed Ingress and rebuild the configuration from scratch."""
        ingress_classes = self.list_ingress_classes()
        configs: list[IngressConfig] = []
        by_key: dict[tuple[str, str], Any] = {}
        for ingress in self._list_ingresses():
            managed, _ = self.is_managed(ingress, ingress_classes)
            if not managed:
                continue
            try:
                configs.append(self.fetch(ingress))
            except SourceError as exc:
                self.reporter.not_reconciled(ingress, exc)
                continue
            by_key[(ingress.metadata.namespace, ingress.metadata.name)] = ingress

        result = self.sync.set(configs, cancel=cancel)
        for key, ingress in by_key.items():
            if key in result.failed:
                self.reporter.not_reconciled(ingress, SourceError(result.failed[key]))
                continue
            try:
                self.update_ingress_status(ingress)
            except (ReconcileError, ApiException) as exc:
                self.reporter.not_reconciled(ingress, exc)
                continue
            self.reporter.reconciled(ingress)
        self.logger.info(
            "Initial sync complete: %d ingress(es) synced, %d skipped, changed=%s",
            len(by_key) - len(result.failed),
            len(result.failed),
            result.changed,
        )

    def update_ingress_status(self, ingress: Any) -> bool:
        """Copy the proxy Service's load balancer addresses to ``status.loadBalancer``.

        Does nothing unless a status Service is configured.  The status is
        patched only when it differs; returns whether a patch was sent.
        """
        if self.settings.status_service is None:
            return False
        namespace, name = self.settings.status_service
        proxy = self._read_optional(self.clients.core.read_namespaced_service, name, namespace)
        if proxy is None:
            raise SourceError(f"update status: proxy service {namespace}/{name} not found")
        entries = service_load_balancer_ingress(proxy)
        if entries == current_load_balancer_ingress(ingress):
            return False
        self.clients.networking.patch_namespaced_ingress_status(
            name=ingress.metadata.name,
            namespace=ingress.metadata.namespace,
            body={"status": {"loadBalancer": {"ingress": entries}}},
        )
        self.logger.debug(
            "Ingress %s/%s load balancer status updated", ingress.metadata.namespace, ingress.metadata.name
        )
        return True

    def _delete(self, namespace: str, name: str, reason: str, cancel: threading.Event | None) -> None:
        self.registry.delete_cascade(ObjectKey(INGRESS, namespace, name))
        if self.sync.delete(namespace, name, cancel=cancel):
            self.reporter.deleted(namespace, name, reason)

    def reconcile(self, namespace: str, name: str, cancel: threading.Event | None = None) -> None:
        """Bring the configuration in line with the current state of one Ingress.

        Source, consistency and validation failures are reported on the object
        and leave its last committed routes in place.  Store and API errors
        propagate so the caller can retry.
        """
        self.gate.wait(cancel=cancel, timeout=self.settings.initial_sync_timeout_seconds)

        try:
            ingress = self.clients.networking.read_namespaced_ingress(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise
            self._delete(namespace, name, "ingress not found", cancel)
            return

        managed, reason = self.is_managed(ingress, self.list_ingress_classes())
        if not managed or ingress.metadata.deletion_timestamp is not None:
            self._delete(namespace, name, reason or "ingress is being deleted", cancel)
            return

        try:
            ic = self.fetch(ingress)
            changed = self.sync.upsert(ic, cancel=cancel)
            self.update_ingress_status(ingress)
        except (OperationCancelled, StoreError):
            raise
        except ReconcileError as exc:
            self.reporter.not_reconciled(ingress, exc)
            return
        if changed:
            self.reporter.reconciled(ingress)
        else:
            self.logger.debug("Ingress %s/%s unchanged", namespace, name)

    # ------------------------------------------------------------------
    # Event handling and work queue
    # ------------------------------------------------------------------

    def affected_ingresses(self, kind: str, obj: Any) -> list[tuple[str, str]]:
        """Map a watch event to the Ingress keys that must be reconciled."""
        metadata = getattr(obj, "metadata", None)
        if metadata is None or not metadata.name:
            return []
        if kind == INGRESS:
            return [(metadata.namespace, metadata.name)]
        if kind == ENDPOINT_SLICE:
            # Slices are tracked through the Service they belong to.
            service_name = (metadata.labels or {}).get(SERVICE_NAME_LABEL)
            if not service_name:
                return []
            source = ObjectKey(SERVICE, metadata.namespace, service_name)
        else:
            source = ObjectKey.of(obj, kind)
        dependants = self.registry.deps_of_kind(source, INGRESS)
        return [(key.namespace, key.name) for key in dependants]

    def enqueue(self, namespace: str, name: str) -> None:
        key = (namespace, name)
        with self._pending_lock:
            if key in self._pending:
                return
            self._pending.add(key)
        self._queue.put(key)

    def _backoff_seconds(self, key: tuple[str, str]) -> float:
        with self._pending_lock:
            attempt = self._attempts.get(key, 0) + 1
            self._attempts[key] = attempt
        return min(30.0, float(2 ** (attempt - 1)))

    def _worker(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            try:
                key = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            with self._pending_lock:
                self._pending.discard(key)
            try:
                self.reconcile(*key, cancel=stop)
                with self._pending_lock:
                    self._attempts.pop(key, None)
            except OperationCancelled:
                if not self._should_stop(stop):
                    self.logger.warning("Reconcile of %s/%s cancelled; requeueing", *key)
                    self.enqueue(*key)
            except Exception:
                delay = self._backoff_seconds(key)
                self.logger.exception(
                    "Reconcile of ingress %s/%s failed; retrying in %.1fs", key[0], key[1], delay
                )
                METRICS.reconciles_total.labels(kind=INGRESS, outcome="error").inc()
                stop.wait(timeout=delay * (0.5 + random.random()))  # noqa: S311
                self.enqueue(*key)

    # ------------------------------------------------------------------
    # Watch loops
    # ------------------------------------------------------------------

    def watch_targets(self) -> list[WatchTarget]:
        core, networking = self.clients.core, self.clients.networking
        discovery = self.clients.discovery
        if not self.settings.watch_namespaces:
            return [
                WatchTarget(INGRESS, networking.list_ingress_for_all_namespaces),
                WatchTarget(SERVICE, core.list_service_for_all_namespaces),
                WatchTarget(ENDPOINT_SLICE, discovery.list_endpoint_slice_for_all_namespaces),
                WatchTarget(SECRET, core.list_secret_for_all_namespaces),
            ]
        targets = []
        for namespace in self.settings.watch_namespaces:
            targets.extend(
                [
                    WatchTarget(INGRESS, networking.list_namespaced_ingress, namespace),
                    WatchTarget(SERVICE, core.list_namespaced_service, namespace),
                    WatchTarget(ENDPOINT_SLICE, discovery.list_namespaced_endpoint_slice, namespace),
                    WatchTarget(SECRET, core.list_namespaced_secret, namespace),
                ]
            )
        return targets

    def handle_event(self, kind: str, event_type: str, obj: Any) -> list[tuple[str, str]]:
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return []
        keys = self.affected_ingresses(kind, obj)
        for namespace, name in keys:
            self.enqueue(namespace, name)
        return keys

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt every open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _watch_loop(self, target: WatchTarget, stop: threading.Event) -> None:
        """List-then-watch one resource until shutdown.

        ``410 Gone`` re-lists from a fresh resourceVersion; ``401``/``403``
        are configuration errors that stop the whole controller; anything else
        backs off exponentially with jitter, capped at 30 s.
        """
        resource_version: str | None = None
        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._watchers.add(watcher)
            try:
                if resource_version is None:
                    listing = target.list_fn(**target.list_kwargs())
                    resource_version = listing.metadata.resource_version
                    for obj in listing.items or []:
                        self.handle_event(target.kind, "ADDED", obj)

                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=target.kind).inc()
                stream_count += 1
                for event in watcher.stream(
                    target.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **target.list_kwargs(),
                ):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self.handle_event(target.kind, str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", target.kind)
                    resource_version = None
                    continue
                METRICS.watch_errors_total.labels(resource=target.kind).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API denied %s watch (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        target.kind,
                        exc.status,
                    )
                    stop.set()
                    return
                self.logger.exception("%s watch error", target.kind)
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                METRICS.watch_errors_total.labels(resource=target.kind).inc()
                self.logger.exception("Unexpected %s watch error", target.kind)
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._watchers.discard(watcher)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run the initial sync, then watch and reconcile until shutdown.

        A failed initial sync is fatal: the gate replays its error to every
        later reconcile, so the loop returns and the process exits for its
        supervisor to restart it.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        try:
            self.gate.wait(cancel=stop, timeout=self.settings.initial_sync_timeout_seconds)
        except OperationCancelled:
            self.logger.warning("Initial ingress sync did not finish before shutdown")
            return
        except Exception:
            self.logger.error("Initial ingress sync failed; stopping ingress controller")
            stop.set()
            return

        threads = [
            threading.Thread(target=self._worker, args=(stop,), name=f"ingress-worker-{index}", daemon=True)
            for index in range(self.settings.workers)
        ]
        threads.extend(
            threading.Thread(
                target=self._watch_loop,
                args=(target, stop),
                name=f"watch-{target.kind.lower()}-{target.namespace or 'all'}",
                daemon=True,
            )
            for target in self.watch_targets()
        )
        for thread in threads:
            thread.start()

        while not self._should_stop(stop):
            stop.wait(timeout=1)
        self.request_stop()
        for thread in threads:
            thread.join(timeout=5)

