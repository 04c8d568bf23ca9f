from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from ingress_controller.src.certs import TLS_SECRET_TYPE, Certificate, certificate_from_secret

LOGGER = logging.getLogger(__name__)

GATEWAY_GROUP = "gateway.networking.k8s.io"
CORE_GROUP = ""

# Route reasons
REASON_ACCEPTED = "Accepted"
REASON_NO_MATCHING_PARENT = "NoMatchingParent"
REASON_NO_MATCHING_LISTENER_HOSTNAME = "NoMatchingListenerHostname"
REASON_NOT_ALLOWED_BY_LISTENERS = "NotAllowedByListeners"
REASON_UNSUPPORTED_VALUE = "UnsupportedValue"
REASON_RESOLVED_REFS = "ResolvedRefs"
REASON_INVALID_KIND = "InvalidKind"
REASON_REF_NOT_PERMITTED = "RefNotPermitted"
REASON_BACKEND_NOT_FOUND = "BackendNotFound"
# Listener and gateway reasons
REASON_PROGRAMMED = "Programmed"
REASON_INVALID_ROUTE_KINDS = "InvalidRouteKinds"
REASON_INVALID_CERTIFICATE_REF = "InvalidCertificateRef"

# Lower index wins when a route fails to attach to every listener it tried.
_ATTACH_FAILURE_PRIORITY = (
    REASON_NO_MATCHING_PARENT,
    REASON_NO_MATCHING_LISTENER_HOSTNAME,
    REASON_NOT_ALLOWED_BY_LISTENERS,
)

_HTTP_PROTOCOLS = frozenset({"HTTP", "HTTPS"})
SUPPORTED_ROUTE_KINDS = ({"group": GATEWAY_GROUP, "kind": "HTTPRoute"},)


@dataclass(frozen=True)
class RefKey:
    """Fully-qualified reference to an object: group, kind, namespace, name."""

    group: str
    kind: str
    namespace: str
    name: str = ""


def _meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def object_ref_key(obj: Mapping[str, Any], group: str, kind: str) -> RefKey:
    meta = _meta(obj)
    return RefKey(group=group, kind=kind, namespace=meta.get("namespace", ""), name=meta.get("name", ""))


def parent_ref_key(ref: Mapping[str, Any], route_namespace: str) -> RefKey:
    return RefKey(
        group=ref.get("group", GATEWAY_GROUP),
        kind=ref.get("kind", "Gateway"),
        namespace=ref.get("namespace") or route_namespace,
        name=ref.get("name", ""),
    )


def backend_ref_key(ref: Mapping[str, Any], route_namespace: str) -> RefKey:
    return RefKey(
        group=ref.get("group", CORE_GROUP),
        kind=ref.get("kind", "Service"),
        namespace=ref.get("namespace") or route_namespace,
        name=ref.get("name", ""),
    )


def certificate_ref_key(ref: Mapping[str, Any], gateway_namespace: str) -> RefKey:
    return RefKey(
        group=ref.get("group", CORE_GROUP),
        kind=ref.get("kind", "Secret"),
        namespace=ref.get("namespace") or gateway_namespace,
        name=ref.get("name", ""),
    )


class ReferenceGrantMap:
    """Cross-namespace permissions collected from ReferenceGrant objects.

    Maps a target key (an empty name meaning every object of that kind in the
    namespace) to the ``(group, kind, namespace)`` sources allowed to refer to
    it.
    """

    def __init__(self) -> None:
        self._grants: dict[RefKey, set[RefKey]] = {}

    @classmethod
    def build(cls, grants: Iterable[Mapping[str, Any]]) -> ReferenceGrantMap:
        result = cls()
        for grant in grants:
            namespace = _meta(grant).get("namespace", "")
            spec = grant.get("spec") or {}
            for to in spec.get("to") or []:
                to_key = RefKey(
                    group=to.get("group", CORE_GROUP),
                    kind=to.get("kind", ""),
                    namespace=namespace,
                    name=to.get("name") or "",
                )
                sources = result._grants.setdefault(to_key, set())
                for source in spec.get("from") or []:
                    sources.add(
                        RefKey(
                            group=source.get("group", CORE_GROUP),
                            kind=source.get("kind", ""),
                            namespace=source.get("namespace", ""),
                        )
                    )
        return result

    def allowed(self, source: RefKey, target: RefKey) -> bool:
        if source.namespace == target.namespace:
            return True
        source = replace(source, name="")
        if source in self._grants.get(target, ()):
            return True
        return source in self._grants.get(replace(target, name=""), ())


# ---------------------------------------------------------------------------
# Hostnames
# ---------------------------------------------------------------------------


def hostname_matches(wildcard: str, hostname: str) -> bool:
    """``*.example.com`` matches any name below ``example.com`` but not the bare domain."""
    if not wildcard.startswith("*."):
        return wildcard == hostname
    suffix = wildcard[1:]
    return hostname.endswith(suffix) and len(hostname) > len(suffix)


def route_hostnames(route: Mapping[str, Any]) -> list[str]:
    return [name.lower() for name in (route.get("spec") or {}).get("hostnames") or []]


def hostname_intersection(listener_hostname: str | None, hostnames: list[str]) -> list[str]:
    """Hostnames a route may serve through a listener.

    If either side is unset the other side wins; both unset yields ``["*"]``.
    A wildcard on one side admits the more specific name from the other.
    """
    if not listener_hostname:
        return list(hostnames) if hostnames else ["*"]
    listener_hostname = listener_hostname.lower()
    if not hostnames:
        return [listener_hostname]

    result: list[str] = []
    for hostname in hostnames:
        if hostname == listener_hostname or hostname_matches(listener_hostname, hostname):
            candidate = hostname
        elif hostname_matches(hostname, listener_hostname):
            candidate = listener_hostname
        else:
            continue
        if candidate not in result:
            result.append(candidate)
    return result


# ---------------------------------------------------------------------------
# Label selectors
# ---------------------------------------------------------------------------


def selector_matches(selector: Mapping[str, Any] | None, labels: Mapping[str, str]) -> bool:
    """Evaluate a metav1.LabelSelector (matchLabels and matchExpressions)."""
    if not selector:
        return True
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != value:
            return False
    for expression in selector.get("matchExpressions") or []:
        key = expression.get("key", "")
        operator = expression.get("operator")
        values = expression.get("values") or []
        if operator == "In" and labels.get(key) not in values:
            return False
        if operator == "NotIn" and key in labels and labels[key] in values:
            return False
        if operator == "Exists" and key not in labels:
            return False
        if operator == "DoesNotExist" and key in labels:
            return False
        if operator not in {"In", "NotIn", "Exists", "DoesNotExist"}:
            LOGGER.warning("Unsupported label selector operator %r", operator)
            return False
    return True


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def make_condition(
    condition_type: str,
    status: bool,
    reason: str,
    message: str = "",
    generation: int | None = None,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> dict[str, Any]:
    condition: dict[str, Any] = {
        "type": condition_type,
        "status": "True" if status else "False",
        "reason": reason,
        "message": message,
        "lastTransitionTime": now_fn(),
    }
    if generation is not None:
        condition["observedGeneration"] = generation
    return condition


def upsert_condition(conditions: list[dict[str, Any]], condition: dict[str, Any]) -> bool:
    """Insert or replace a condition of the same type; return True if anything changed.

    An existing condition with the same status, reason, message and observed
    generation is left alone so its ``lastTransitionTime`` is preserved.
    """
    for index, existing in enumerate(conditions):
        if existing.get("type") != condition["type"]:
            continue
        if all(
            existing.get(key) == condition.get(key)
            for key in ("status", "reason", "message", "observedGeneration")
        ):
            return False
        conditions[index] = condition
        return True
    conditions.append(condition)
    return True


# ---------------------------------------------------------------------------
# Listener attachment
# ---------------------------------------------------------------------------


@dataclass
class Attachment:
    hostnames: list[str]
    reason: str
    listeners: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.reason == REASON_ACCEPTED


def _listener_admits_kind(listener: Mapping[str, Any]) -> bool:
    if listener.get("protocol") not in _HTTP_PROTOCOLS:
        return False
    kinds = (listener.get("allowedRoutes") or {}).get("kinds")
    if not kinds:
        return True
    return any(
        kind.get("kind") == "HTTPRoute" and kind.get("group", GATEWAY_GROUP) == GATEWAY_GROUP
        for kind in kinds
    )


def _listener_admits_namespace(
    listener: Mapping[str, Any],
    gateway_namespace: str,
    route_namespace: str,
    namespace_labels: Mapping[str, Mapping[str, str]],
) -> bool:
    namespaces = (listener.get("allowedRoutes") or {}).get("namespaces") or {}
    source = namespaces.get("from", "Same")
    if source == "All":
        return True
    if source == "Selector":
        return selector_matches(namespaces.get("selector"), namespace_labels.get(route_namespace, {}))
    return route_namespace == gateway_namespace


def attach_to_listener(
    listener: Mapping[str, Any],
    gateway_namespace: str,
    route: Mapping[str, Any],
    namespace_labels: Mapping[str, Mapping[str, str]],
) -> Attachment:
    route_namespace = _meta(route).get("namespace", "")
    if not _listener_admits_kind(listener) or not _listener_admits_namespace(
        listener, gateway_namespace, route_namespace, namespace_labels
    ):
        return Attachment(hostnames=[], reason=REASON_NOT_ALLOWED_BY_LISTENERS)
    hostnames = hostname_intersection(listener.get("hostname"), route_hostnames(route))
    if not hostnames:
        return Attachment(hostnames=[], reason=REASON_NO_MATCHING_LISTENER_HOSTNAME)
    return Attachment(hostnames=hostnames, reason=REASON_ACCEPTED)


def process_http_route(
    gateway: Mapping[str, Any],
    parent_ref: Mapping[str, Any],
    route: Mapping[str, Any],
    namespace_labels: Mapping[str, Mapping[str, str]],
) -> Attachment:
    """Attach ``route`` to the listeners of ``gateway`` selected by ``parent_ref``.

    A parentRef with ``sectionName`` is checked against that listener only.
    Hostnames are unioned over every listener that accepts the route; when
    none does, the most relevant failure reason is reported.
    """
    gateway_namespace = _meta(gateway).get("namespace", "")
    listeners = list((gateway.get("spec") or {}).get("listeners") or [])
    section = parent_ref.get("sectionName")
    port = parent_ref.get("port")
    if section:
        listeners = [listener for listener in listeners if listener.get("name") == section]
    if port is not None:
        listeners = [listener for listener in listeners if listener.get("port") == port]
    if not listeners:
        return Attachment(hostnames=[], reason=REASON_NO_MATCHING_PARENT)

    hostnames: list[str] = []
    accepted_by: list[str] = []
    reasons: set[str] = set()
    for listener in listeners:
        attachment = attach_to_listener(listener, gateway_namespace, route, namespace_labels)
        reasons.add(attachment.reason)
        if attachment.accepted:
            accepted_by.append(listener.get("name", ""))
        for hostname in attachment.hostnames:
            if hostname not in hostnames:
                hostnames.append(hostname)

    if REASON_ACCEPTED in reasons:
        return Attachment(hostnames=hostnames, reason=REASON_ACCEPTED, listeners=accepted_by)
    reason = next(r for r in _ATTACH_FAILURE_PRIORITY if r in reasons)
    return Attachment(hostnames=[], reason=reason)


# ---------------------------------------------------------------------------
# Backend references
# ---------------------------------------------------------------------------


@dataclass
class BackendResolution:
    """Outcome of validating every backendRef of one HTTPRoute.

    ``valid`` holds ``(rule_index, backend_index)`` pairs that may receive
    traffic.  ``reason`` / ``message`` describe the first invalid ref, if any.
    ``unsupported`` is set when a backendRef carries its own filters.
    """

    valid: set[tuple[int, int]] = field(default_factory=set)
    reason: str = REASON_RESOLVED_REFS
    message: str = ""
    unsupported: str = ""

    @property
    def resolved(self) -> bool:
        return self.reason == REASON_RESOLVED_REFS


def resolve_backend_refs(
    route: Mapping[str, Any],
    services: Mapping[tuple[str, str], Any],
    grants: ReferenceGrantMap,
) -> BackendResolution:
    route_key = object_ref_key(route, GATEWAY_GROUP, "HTTPRoute")
    resolution = BackendResolution()

    def fail(reason: str, message: str) -> None:
        if resolution.resolved:
            resolution.reason = reason
            resolution.message = message

    for rule_index, rule in enumerate((route.get("spec") or {}).get("rules") or []):
        for backend_index, ref in enumerate(rule.get("backendRefs") or []):
            if ref.get("filters"):
                resolution.unsupported = (
                    f"rules[{rule_index}].backendRefs[{backend_index}]: backendRef filters are not supported"
                )
            key = backend_ref_key(ref, route_key.namespace)
            if key.group != CORE_GROUP or key.kind != "Service":
                fail(REASON_INVALID_KIND, f"unsupported backend kind {key.group}/{key.kind}")
            elif not grants.allowed(route_key, key):
                fail(
                    REASON_REF_NOT_PERMITTED,
                    f"reference to {key.namespace}/{key.name} is not permitted by any ReferenceGrant",
                )
            elif (key.namespace, key.name) not in services:
                fail(REASON_BACKEND_NOT_FOUND, f"service {key.namespace}/{key.name} not found")
            elif ref.get("port") is None:
                fail(REASON_BACKEND_NOT_FOUND, f"service {key.namespace}/{key.name}: port is required")
            else:
                resolution.valid.add((rule_index, backend_index))
    return resolution


# ---------------------------------------------------------------------------
# Gateway processing
# ---------------------------------------------------------------------------


@dataclass
class AttachedRoute:
    """An accepted HTTPRoute with the hostnames it serves and its usable backends."""

    route: Mapping[str, Any]
    hostnames: list[str]
    valid_backends: set[tuple[int, int]]

    @property
    def namespace(self) -> str:
        return _meta(self.route).get("namespace", "")

    @property
    def name(self) -> str:
        return _meta(self.route).get("name", "")


@dataclass
class GatewayConfig:
    """Everything derived from Gateway API objects in one pass."""

    routes: list[AttachedRoute] = field(default_factory=list)
    certificates: list[Certificate] = field(default_factory=list)
    gateway_statuses: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    route_statuses: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)


def gateway_class_status(
    gateway_class: Mapping[str, Any], now_fn: Callable[[], str] = utc_now_rfc3339
) -> tuple[dict[str, Any], bool]:
    """Return the GatewayClass status with ``Accepted=True`` and whether it changed."""
    status = dict(gateway_class.get("status") or {})
    conditions = [dict(condition) for condition in status.get("conditions") or []]
    changed = upsert_condition(
        conditions,
        make_condition(
            "Accepted",
            True,
            REASON_ACCEPTED,
            generation=_meta(gateway_class).get("generation"),
            now_fn=now_fn,
        ),
    )
    status["conditions"] = conditions
    return status, changed


def _listener_status(
    listener: Mapping[str, Any],
    gateway: Mapping[str, Any],
    grants: ReferenceGrantMap,
    secrets: Mapping[tuple[str, str], Any],
    certificates: list[Certificate],
    attached_routes: int,
    generation: int | None,
    now_fn: Callable[[], str],
) -> dict[str, Any]:
    gateway_key = object_ref_key(gateway, GATEWAY_GROUP, "Gateway")
    conditions: list[dict[str, Any]] = []
    resolved_reason = REASON_RESOLVED_REFS
    message = ""

    kinds = (listener.get("allowedRoutes") or {}).get("kinds") or []
    if any(
        kind.get("kind") != "HTTPRoute" or kind.get("group", GATEWAY_GROUP) != GATEWAY_GROUP
        for kind in kinds
    ):
        resolved_reason = REASON_INVALID_ROUTE_KINDS
        message = "only HTTPRoute is supported"

    for ref in (listener.get("tls") or {}).get("certificateRefs") or []:
        key = certificate_ref_key(ref, gateway_key.namespace)
        secret = secrets.get((key.namespace, key.name))
        if key.group != CORE_GROUP or key.kind != "Secret":
            resolved_reason, message = REASON_INVALID_CERTIFICATE_REF, f"unsupported kind {key.kind}"
        elif not grants.allowed(gateway_key, key):
            resolved_reason = REASON_REF_NOT_PERMITTED
            message = f"reference to secret {key.namespace}/{key.name} is not permitted"
        elif secret is None or secret.type != TLS_SECRET_TYPE:
            resolved_reason = REASON_INVALID_CERTIFICATE_REF
            message = f"secret {key.namespace}/{key.name} is missing or not of type {TLS_SECRET_TYPE}"
        else:
            certificates.append(certificate_from_secret(secret))

    resolved = resolved_reason == REASON_RESOLVED_REFS
    for condition in (
        make_condition("Accepted", True, REASON_ACCEPTED, generation=generation, now_fn=now_fn),
        make_condition(
            "Programmed",
            resolved,
            REASON_PROGRAMMED if resolved else "Invalid",
            generation=generation,
            now_fn=now_fn,
        ),
        make_condition("ResolvedRefs", resolved, resolved_reason, message, generation, now_fn),
    ):
        upsert_condition(conditions, condition)

    return {
        "name": listener.get("name", ""),
        "supportedKinds": [dict(kind) for kind in SUPPORTED_ROUTE_KINDS],
        "attachedRoutes": attached_routes,
        "conditions": conditions,
    }


def process_gateways(
    gateways: Iterable[Mapping[str, Any]],
    routes: Iterable[Mapping[str, Any]],
    grants: ReferenceGrantMap,
    services: Mapping[tuple[str, str], Any],
    secrets: Mapping[tuple[str, str], Any],
    namespace_labels: Mapping[str, Mapping[str, str]],
    controller_name: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> GatewayConfig:
    """Attach HTTPRoutes to our Gateways and compute every status update.

    ``gateways`` must already be filtered to those whose GatewayClass this
    controller owns.
    """
    result = GatewayConfig()
    gateways = list(gateways)
    gateways_by_key = {object_ref_key(gw, GATEWAY_GROUP, "Gateway"): gw for gw in gateways}
    attached_counts: dict[tuple[RefKey, str], int] = {}
    accepted: dict[tuple[str, str], AttachedRoute] = {}

    for route in routes:
        meta = _meta(route)
        route_ns, route_name = meta.get("namespace", ""), meta.get("name", "")
        generation = meta.get("generation")
        backends = resolve_backend_refs(route, services, grants)
        parents: list[dict[str, Any]] = []

        for parent_ref in (route.get("spec") or {}).get("parentRefs") or []:
            key = parent_ref_key(parent_ref, route_ns)
            gateway = gateways_by_key.get(key)
            if gateway is None:
                continue
            attachment = process_http_route(gateway, parent_ref, route, namespace_labels)
            reason, message = attachment.reason, ""
            if attachment.accepted and backends.unsupported:
                reason, message = REASON_UNSUPPORTED_VALUE, backends.unsupported
            if reason == REASON_ACCEPTED:
                entry = accepted.setdefault(
                    (route_ns, route_name),
                    AttachedRoute(route=route, hostnames=[], valid_backends=backends.valid),
                )
                for hostname in attachment.hostnames:
                    if hostname not in entry.hostnames:
                        entry.hostnames.append(hostname)
                for listener_name in attachment.listeners:
                    count_key = (key, listener_name)
                    attached_counts[count_key] = attached_counts.get(count_key, 0) + 1

            conditions: list[dict[str, Any]] = []
            upsert_condition(
                conditions,
                make_condition("Accepted", reason == REASON_ACCEPTED, reason, message, generation, now_fn),
            )
            upsert_condition(
                conditions,
                make_condition(
                    "ResolvedRefs", backends.resolved, backends.reason, backends.message, generation, now_fn
                ),
            )
            parents.append(
                {"parentRef": dict(parent_ref), "controllerName": controller_name, "conditions": conditions}
            )

        if parents:
            result.route_statuses[(route_ns, route_name)] = {"parents": parents}

    result.routes = [accepted[key] for key in sorted(accepted)]

    for key, gateway in sorted(gateways_by_key.items(), key=lambda item: (item[0].namespace, item[0].name)):
        generation = _meta(gateway).get("generation")
        listener_statuses = [
            _listener_status(
                listener,
                gateway,
                grants,
                secrets,
                result.certificates,
                attached_counts.get((key, listener.get("name", "")), 0),
                generation,
                now_fn,
            )
            for listener in (gateway.get("spec") or {}).get("listeners") or []
        ]
        conditions: list[dict[str, Any]] = []
        upsert_condition(
            conditions, make_condition("Accepted", True, REASON_ACCEPTED, generation=generation, now_fn=now_fn)
        )
        upsert_condition(
            conditions,
            make_condition("Programmed", True, REASON_PROGRAMMED, generation=generation, now_fn=now_fn),
        )
        result.gateway_statuses[(key.namespace, key.name)] = {
            "conditions": conditions,
            "listeners": listener_statuses,
        }
    return result
