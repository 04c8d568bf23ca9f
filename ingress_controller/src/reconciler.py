from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ingress_controller.src.certs import route_hostname, select_certificates
from ingress_controller.src.configuration import Configuration, GlobalSettings, ensure_deterministic_order
from ingress_controller.src.errors import ReconcileError, StoreError, ValidationError
from ingress_controller.src.gateway import GatewayConfig
from ingress_controller.src.gateway_routes import translate_http_route
from ingress_controller.src.ingress import IngressConfig, ingress_certificates, ingress_to_routes
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.routes import HTTP_ROUTE_KIND, Route, RouteID, RouteTable
from ingress_controller.src.store import ConfigStore
from ingress_controller.src.validation import ConfigValidator, Validator

INGRESS_ROUTE_KIND = ""
INTERNAL_ROUTE_KIND = "Internal"

DEBUG_ROUTE_FROM = "https://envoy.localhost.accessgate.io"
DEBUG_ROUTE_TO = "http://localhost:9901/"


@dataclass
class BulkSyncResult:
    """Outcome of a full resync: whether the record changed and which sources were skipped."""

    changed: bool
    failed: dict[tuple[str, str], str] = field(default_factory=dict)


def debug_route() -> Route:
    return Route(
        id=RouteID(name="envoy-admin", namespace="", kind=INTERNAL_ROUTE_KIND).encode(),
        name="internal-envoy-admin",
        from_=DEBUG_ROUTE_FROM,
        to=[DEBUG_ROUTE_TO],
        allow_any_authenticated_user=True,
    )


class ConfigReconciler:
    """Merge synthesized routes and certificates into the persisted configuration.

    Every mutating call reads the current record, works on a clone, runs the
    determinism pass and the validator, and writes only if the canonical JSON
    differs from what was read.  A failure at any step discards the clone, so
    the previously committed configuration is never partially overwritten.

    None of these methods serialise against each other; wrap the reconciler in
    :class:`~ingress_controller.src.lock.SyncLock` when several controllers
    share one store.
    """

    def __init__(
        self,
        store: ConfigStore,
        validator: Validator | None = None,
        debug_admin_route: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.validator = validator or ConfigValidator()
        self.debug_admin_route = debug_admin_route
        self.logger = logger or logging.getLogger(__name__)

    # -- public operations -------------------------------------------------

    def upsert(self, ic: IngressConfig) -> bool:
        """Replace every route of one Ingress; return True if the record changed."""
        current = self.load()
        cfg = current.clone()
        self._merge_ingress(cfg, ic)
        return self._commit(current, cfg)

    def set(self, ingresses: Iterable[IngressConfig]) -> BulkSyncResult:
        """Rebuild all Ingress-derived routes from the given full listing.

        Each Ingress is synthesized and validated on its own; one that fails is
        logged and left out instead of blocking the rest.  Global settings and
        HTTPRoute-derived routes already in the record are carried over.
        """
        current = self.load()
        cfg = Configuration(settings=current.settings)
        table = RouteTable.from_routes(current.routes)
        table.remove_kind(INGRESS_ROUTE_KIND)
        cfg.routes = table.to_routes()
        cfg.certificates = select_certificates(
            current.certificates, [route_hostname(route.from_) for route in cfg.routes]
        )

        result = BulkSyncResult(changed=False)
        for ic in ingresses:
            piece = Configuration(settings=cfg.settings)
            try:
                self._merge_ingress(piece, ic)
                self._finalize(piece)
                self._validate(piece)
            except ReconcileError as exc:
                self.logger.error("Skipping ingress %s/%s during full sync: %s", ic.namespace, ic.name, exc)
                METRICS.skipped_sources_total.inc()
                result.failed[(ic.namespace, ic.name)] = str(exc)
                continue
            merged = RouteTable.from_routes(cfg.routes)
            merged.merge(RouteTable.from_routes(piece.routes))
            cfg.routes = merged.to_routes()
            cfg.certificates.extend(piece.certificates)

        result.changed = self._commit(current, cfg)
        return result

    def delete(self, namespace: str, name: str) -> bool:
        """Remove every route owned by the named Ingress, whatever its paths."""
        current = self.load()
        cfg = current.clone()
        table = RouteTable.from_routes(cfg.routes)
        removed = table.remove_owner(name, namespace)
        self.logger.debug("Removing %d route(s) of ingress %s/%s", removed, namespace, name)
        cfg.routes = table.to_routes()
        return self._commit(current, cfg)

    def set_config(self, settings: GlobalSettings) -> bool:
        """Replace the global settings section."""
        current = self.load()
        cfg = current.clone()
        cfg.settings = settings
        return self._commit(current, cfg)

    def set_gateway_config(
        self,
        gateway_config: GatewayConfig,
        policy_filters: Mapping[tuple[str, str], Mapping[str, Any]] | None = None,
    ) -> bool:
        """Replace every HTTPRoute-derived route with those of ``gateway_config``."""
        routes: list[Route] = []
        for attached in gateway_config.routes:
            routes.extend(translate_http_route(attached, policy_filters))
        incoming = RouteTable.from_routes(routes)

        current = self.load()
        cfg = current.clone()
        table = RouteTable.from_routes(cfg.routes)
        table.remove_kind(HTTP_ROUTE_KIND)
        table.merge(incoming)
        cfg.routes = table.to_routes()
        cfg.certificates.extend(gateway_config.certificates)
        return self._commit(current, cfg)

    def load(self) -> Configuration:
        """Read the persisted record; a missing record is an empty configuration."""
        try:
            cfg = self.store.get()
        except StoreError:
            METRICS.store_errors_total.labels(operation="get").inc()
            raise
        return cfg if cfg is not None else Configuration()

    # -- internals ---------------------------------------------------------

    def _merge_ingress(self, cfg: Configuration, ic: IngressConfig) -> None:
        incoming = RouteTable.from_routes(ingress_to_routes(ic))
        table = RouteTable.from_routes(cfg.routes)
        table.remove_owner(ic.name, ic.namespace)
        table.merge(incoming)
        cfg.routes = table.to_routes()
        cfg.certificates.extend(ingress_certificates(ic))

    def _finalize(self, cfg: Configuration) -> None:
        table = RouteTable.from_routes(cfg.routes)
        table.remove_kind(INTERNAL_ROUTE_KIND)
        cfg.routes = table.to_routes()
        if self.debug_admin_route:
            cfg.routes.append(debug_route())

        hostnames = [route_hostname(route.from_) for route in cfg.routes]
        if cfg.settings.authenticate_service_url:
            hostnames.append(route_hostname(cfg.settings.authenticate_service_url))
        cfg.certificates = select_certificates(
            [*cfg.certificates, *cfg.settings.certificates], hostnames
        )
        ensure_deterministic_order(cfg)

    def _validate(self, cfg: Configuration) -> None:
        ok, message = self.validator.validate(cfg)
        if not ok:
            METRICS.validation_failures_total.inc()
            raise ValidationError(f"configuration rejected: {message}")

    def _commit(self, current: Configuration, cfg: Configuration) -> bool:
        self._finalize(cfg)
        if cfg.dumps() == current.dumps():
            METRICS.commits_total.labels(result="unchanged").inc()
            return False

        self._validate(cfg)
        try:
            self.store.put(cfg)
        except StoreError:
            METRICS.store_errors_total.labels(operation="put").inc()
            raise
        METRICS.commits_total.labels(result="changed").inc()
        METRICS.routes.set(len(cfg.routes))
        METRICS.certificates.set(len(cfg.certificates))
        self.logger.info(
            "Committed configuration with %d route(s) and %d certificate(s)",
            len(cfg.routes),
            len(cfg.certificates),
        )
        return True
