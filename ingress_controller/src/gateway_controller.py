from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from kubernetes.client import ApiException

from ingress_controller.src.gateway import (
    ReferenceGrantMap,
    gateway_class_status,
    process_gateways,
)
from ingress_controller.src.gateway_routes import POLICY_FILTER_GROUP
from ingress_controller.src.kube import (
    REFERENCE_GRANT_VERSION,
    gateway_status_addresses,
    list_gateway_objects,
    patch_gateway_status,
)
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.resync import PeriodicController

GATEWAY_KIND = "Gateway"
POLICY_FILTER_PLURAL = "policyfilters"
POLICY_FILTER_VERSION = "v1alpha1"


def _key(obj: Mapping[str, Any]) -> tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return metadata.get("namespace", ""), metadata.get("name", "")


def _carry_transition_times(previous: list[Mapping[str, Any]], current: list[dict[str, Any]]) -> None:
    """Keep ``lastTransitionTime`` of conditions whose observable state did not change."""
    by_type = {condition.get("type"): condition for condition in previous}
    for condition in current:
        old = by_type.get(condition.get("type"))
        if old is None:
            continue
        if all(
            old.get(key) == condition.get(key)
            for key in ("status", "reason", "message", "observedGeneration")
        ):
            condition["lastTransitionTime"] = old.get("lastTransitionTime", condition["lastTransitionTime"])


def merge_gateway_status(existing: Mapping[str, Any] | None, computed: dict[str, Any]) -> dict[str, Any]:
    existing = existing or {}
    _carry_transition_times(existing.get("conditions") or [], computed.get("conditions") or [])
    old_listeners = {listener.get("name"): listener for listener in existing.get("listeners") or []}
    for listener in computed.get("listeners") or []:
        old = old_listeners.get(listener.get("name")) or {}
        _carry_transition_times(old.get("conditions") or [], listener.get("conditions") or [])
    return computed


def merge_route_status(
    existing: Mapping[str, Any] | None, computed: dict[str, Any], controller_name: str
) -> dict[str, Any]:
    """Replace this controller's parent statuses, leaving other controllers' entries alone."""
    existing = existing or {}
    foreign: list[dict[str, Any]] = []
    ours: dict[str, Mapping[str, Any]] = {}
    for parent in existing.get("parents") or []:
        if parent.get("controllerName") == controller_name:
            ours[repr(sorted((parent.get("parentRef") or {}).items()))] = parent
        else:
            foreign.append(dict(parent))
    for parent in computed.get("parents") or []:
        old = ours.get(repr(sorted((parent.get("parentRef") or {}).items()))) or {}
        _carry_transition_times(old.get("conditions") or [], parent.get("conditions") or [])
    return {"parents": foreign + list(computed.get("parents") or [])}


class GatewayController(PeriodicController):
    """Periodically recompute the Gateway API view and commit it to the configuration.

    Each pass lists GatewayClasses, Gateways, HTTPRoutes, ReferenceGrants and
    policy filters, attaches routes to the Gateways whose class this controller
    owns, commits the resulting routes and certificates in one
    ``set_gateway_config`` call, and then patches object statuses.  Statuses
    are written only when their content changed.  When a proxy Service is
    configured, its load balancer addresses become each Gateway's
    ``status.addresses``.
    """

    kind = GATEWAY_KIND

    def _list_policy_filters(self) -> dict[tuple[str, str], dict[str, Any]]:
        try:
            response = self.clients.custom_objects.list_cluster_custom_object(
                group=POLICY_FILTER_GROUP, version=POLICY_FILTER_VERSION, plural=POLICY_FILTER_PLURAL
            )
        except ApiException as exc:
            if exc.status == 404:
                self.logger.debug("PolicyFilter resource not installed; extension filters unavailable")
                return {}
            raise
        return {_key(item): dict(item.get("spec") or {}) for item in response.get("items") or []}

    def _namespace_labels(self) -> dict[str, dict[str, str]]:
        namespaces = self.clients.core.list_namespace().items or []
        return {ns.metadata.name: dict(ns.metadata.labels or {}) for ns in namespaces}

    def _accept_gateway_classes(self) -> set[str]:
        owned: set[str] = set()
        for gateway_class in list_gateway_objects(self.clients.custom_objects, "gatewayclasses"):
            if (gateway_class.get("spec") or {}).get("controllerName") != self.settings.gateway_controller_name:
                continue
            name = (gateway_class.get("metadata") or {}).get("name", "")
            owned.add(name)
            status, changed = gateway_class_status(gateway_class)
            if changed:
                patch_gateway_status(self.clients.custom_objects, "gatewayclasses", name, status)
                self.logger.info("GatewayClass %s accepted", name)
        return owned

    def reconcile(self, cancel: threading.Event | None = None) -> bool:
        """Run one full pass; return True if the configuration record changed."""
        owned_classes = self._accept_gateway_classes()
        custom = self.clients.custom_objects
        gateways = [
            gateway
            for gateway in list_gateway_objects(custom, "gateways")
            if (gateway.get("spec") or {}).get("gatewayClassName") in owned_classes
        ]
        routes = list_gateway_objects(custom, "httproutes")
        grants = ReferenceGrantMap.build(
            list_gateway_objects(custom, "referencegrants", version=REFERENCE_GRANT_VERSION)
        )
        services = {
            (svc.metadata.namespace, svc.metadata.name): svc
            for svc in self.clients.core.list_service_for_all_namespaces().items or []
        }
        secrets = {
            (secret.metadata.namespace, secret.metadata.name): secret
            for secret in self.clients.core.list_secret_for_all_namespaces().items or []
        }
        policy_filters = self._list_policy_filters()

        gateway_config = process_gateways(
            gateways,
            routes,
            grants,
            services,
            secrets,
            self._namespace_labels(),
            self.settings.gateway_controller_name,
        )
        changed = self.sync.set_gateway_config(
            gateway_config,
            policy_filters,
            cancel=cancel,
            timeout=self.settings.initial_sync_timeout_seconds,
        )

        if self.settings.status_service is not None:
            proxy = services.get(self.settings.status_service)
            if proxy is None:
                self.logger.warning(
                    "Proxy service %s/%s not found; Gateway addresses not updated",
                    *self.settings.status_service,
                )
            else:
                addresses = gateway_status_addresses(proxy)
                for computed in gateway_config.gateway_statuses.values():
                    computed["addresses"] = [dict(address) for address in addresses]

        existing_gateways = {_key(gateway): gateway.get("status") for gateway in gateways}
        for (namespace, name), computed in gateway_config.gateway_statuses.items():
            previous = existing_gateways.get((namespace, name))
            status = merge_gateway_status(previous, computed)
            if status != (previous or {}):
                patch_gateway_status(custom, "gateways", name, status, namespace=namespace)

        existing_routes = {_key(route): route.get("status") for route in routes}
        for (namespace, name), computed in gateway_config.route_statuses.items():
            previous = existing_routes.get((namespace, name))
            status = merge_route_status(previous, computed, self.settings.gateway_controller_name)
            if status != (previous or {}):
                patch_gateway_status(custom, "httproutes", name, status, namespace=namespace)

        outcome = "changed" if changed else "unchanged"
        METRICS.reconciles_total.labels(kind=GATEWAY_KIND, outcome=outcome).inc()
        self.logger.info(
            "Gateway pass complete: %d gateway(s), %d attached route(s), changed=%s",
            len(gateways),
            len(gateway_config.routes),
            changed,
        )
        return changed

    def resync_seconds(self) -> int:
        return self.settings.gateway_resync_seconds
