from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ingress_controller.src.annotations import (
    PATH_REGEX,
    ROUTE_NAME,
    SECURE_UPSTREAM,
    SERVICE_PROXY_UPSTREAM,
    apply_annotations,
    is_annotation_set,
)
from ingress_controller.src.certs import TLS_SECRET_TYPE, Certificate, certificate_from_secret
from ingress_controller.src.errors import SourceError
from ingress_controller.src.routes import Route, RouteID, sort_routes

LOGGER = logging.getLogger(__name__)

HTTP01_SOLVER_LABEL = "acme.cert-manager.io/http01-solver"

PATH_TYPE_EXACT = "Exact"
PATH_TYPE_PREFIX = "Prefix"
PATH_TYPE_IMPLEMENTATION_SPECIFIC = "ImplementationSpecific"

NamespacedName = tuple[str, str]

SERVICE_NAME_LABEL = "kubernetes.io/service-name"


@dataclass(frozen=True)
class EndpointGroup:
    """Ready addresses serving one port of a Service."""

    name: str
    port: int
    protocol: str
    addresses: tuple[str, ...]


def aggregate_endpoint_slices(slices: list[Any]) -> list[EndpointGroup]:
    """Merge the ready endpoints of a Service's EndpointSlices per port.

    Endpoints whose ``ready`` condition is not true are skipped, as are slice
    ports without a number.  Addresses are de-duplicated and sorted.
    """
    grouped: dict[tuple[str, int, str], set[str]] = {}
    for endpoint_slice in slices:
        ready: list[str] = []
        for endpoint in endpoint_slice.endpoints or []:
            conditions = endpoint.conditions
            if conditions is None or not conditions.ready:
                continue
            ready.extend(endpoint.addresses or [])
        for slice_port in endpoint_slice.ports or []:
            if slice_port.port is None:
                continue
            key = (slice_port.name or "", slice_port.port, slice_port.protocol or "TCP")
            grouped.setdefault(key, set()).update(ready)
    return [
        EndpointGroup(name=name, port=port, protocol=protocol, addresses=tuple(sorted(addresses)))
        for (name, port, protocol), addresses in sorted(grouped.items())
    ]


@dataclass(frozen=True)
class IngressConfig:
    """An Ingress together with the objects it references, fetched beforehand.

    ``services``, ``secrets`` and ``endpoints`` are keyed by
    ``(namespace, name)``; ``endpoints`` holds the ready addresses of a
    Service, aggregated from its EndpointSlices.  Synthesis never talks to the
    API server.
    """

    ingress: Any
    annotation_prefix: str
    services: dict[NamespacedName, Any] = field(default_factory=dict)
    secrets: dict[NamespacedName, Any] = field(default_factory=dict)
    endpoints: dict[NamespacedName, list[EndpointGroup]] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.ingress.metadata.name

    @property
    def namespace(self) -> str:
        return self.ingress.metadata.namespace

    @property
    def annotations(self) -> dict[str, str]:
        return self.ingress.metadata.annotations or {}

    def is_set(self, annotation: str) -> bool:
        return is_annotation_set(self.annotations, self.annotation_prefix, annotation)


def is_http01_solver(ingress: Any) -> bool:
    labels = getattr(ingress.metadata, "labels", None) or {}
    return labels.get(HTTP01_SOLVER_LABEL) == "true"


def tls_secret_names(ingress: Any) -> list[str]:
    spec = ingress.spec
    return sorted({tls.secret_name for tls in (spec.tls or []) if tls.secret_name})


def backend_service_names(ingress: Any) -> list[str]:
    """Names of every Service the ingress routes to, including the default backend."""
    spec = ingress.spec
    names: set[str] = set()
    if spec.default_backend is not None and spec.default_backend.service is not None:
        names.add(spec.default_backend.service.name)
    for rule in spec.rules or []:
        if rule.http is None:
            continue
        for path in rule.http.paths or []:
            if path.backend is not None and path.backend.service is not None:
                names.add(path.backend.service.name)
    return sorted(names)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def route_name(namespace: str, name: str, host: str, path: str) -> str:
    base = _slug(f"{namespace} {name} {host}")
    path_slug = _slug(path)
    return f"{base}-{path_slug}" if path_slug else base


def ingress_to_routes(ic: IngressConfig) -> list[Route]:
    """Translate one Ingress into routes, sorted by path or prefix.

    Any defect (missing host, missing ``http`` block, unsupported path type,
    unknown service port) aborts the whole ingress with :class:`SourceError`.
    """
    template = Route()
    if is_http01_solver(ic.ingress):
        LOGGER.info(
            "Ingress %s/%s is an HTTP-01 challenge solver, enabling public access",
            ic.namespace,
            ic.name,
        )
        template.allow_public_unauthenticated_access = True
        template.preserve_host_header = True
    else:
        try:
            apply_annotations(
                template, ic.annotations, ic.annotation_prefix, ic.namespace, ic.secrets
            )
        except SourceError as exc:
            raise SourceError(f"ingress {ic.namespace}/{ic.name}: annotations: {exc}") from exc

    spec = ic.ingress.spec
    routes: list[Route] = []
    if spec.default_backend is not None:
        routes.append(_default_backend_route(template, ic))
    for rule in spec.rules or []:
        if not rule.host:
            raise SourceError(f"ingress {ic.namespace}/{ic.name}: host is required")
        if rule.http is None:
            raise SourceError(f"ingress {ic.namespace}/{ic.name}: rules.http is required")
        for path in rule.http.paths or []:
            routes.append(
                _path_route(template, ic, rule.host, path.path or "", path.path_type, path.backend)
            )
    return sort_routes(routes)


def _default_backend_route(template: Route, ic: IngressConfig) -> Route:
    tls = ic.ingress.spec.tls or []
    hosts = [host for entry in tls for host in (entry.hosts or [])]
    if len(tls) != 1 or len(hosts) != 1:
        raise SourceError(
            f"ingress {ic.namespace}/{ic.name}: defaultBackend requires exactly one TLS "
            f"host to derive the route host from, got {len(hosts)}"
        )
    return _path_route(template, ic, hosts[0], "/", PATH_TYPE_PREFIX, ic.ingress.spec.default_backend)


def _path_route(
    template: Route,
    ic: IngressConfig,
    host: str,
    path: str,
    path_type: str | None,
    backend: Any,
) -> Route:
    route = template.clone()
    route.from_ = f"https://{host}"
    _set_match(route, ic, path, path_type)

    route.id = RouteID(name=ic.name, namespace=ic.namespace, host=host, path=path).encode()
    custom_name = ic.annotations.get(f"{ic.annotation_prefix}/{ROUTE_NAME}")
    route.name = custom_name or route_name(ic.namespace, ic.name, host, path)

    _set_upstreams(route, ic, host, backend)
    return route


def _set_match(route: Route, ic: IngressConfig, path: str, path_type: str | None) -> None:
    if path_type is None:
        raise SourceError(f"ingress {ic.namespace}/{ic.name}: path {path!r}: pathType is required")
    if path_type == PATH_TYPE_EXACT:
        route.path = path
    elif path_type == PATH_TYPE_PREFIX:
        route.prefix = path
    elif path_type == PATH_TYPE_IMPLEMENTATION_SPECIFIC and ic.is_set(PATH_REGEX):
        route.regex = path
    else:
        raise SourceError(
            f"ingress {ic.namespace}/{ic.name}: path {path!r}: pathType {path_type} is not "
            f"supported, use {PATH_TYPE_EXACT} or {PATH_TYPE_PREFIX}"
            f" (or set {ic.annotation_prefix}/{PATH_REGEX} for regular expressions)"
        )


def _resolve_port(ic: IngressConfig, host: str, service: Any, port_ref: Any) -> int:
    if port_ref is None:
        raise SourceError(
            f"ingress {ic.namespace}/{ic.name}: host {host}: service "
            f"{ic.namespace}/{service.metadata.name} has no port"
        )
    if not port_ref.name:
        return int(port_ref.number)
    for service_port in service.spec.ports or []:
        if service_port.name == port_ref.name:
            return int(service_port.port)
    raise SourceError(
        f"ingress {ic.namespace}/{ic.name}: host {host}: could not find port "
        f"{port_ref.name} on service {ic.namespace}/{service.metadata.name}"
    )


def _set_upstreams(route: Route, ic: IngressConfig, host: str, backend: Any) -> None:
    service_ref = getattr(backend, "service", None)
    if service_ref is None:
        raise SourceError(
            f"ingress {ic.namespace}/{ic.name}: host {host}: service backend must be specified"
        )
    service = ic.services.get((ic.namespace, service_ref.name))
    if service is None:
        raise SourceError(
            f"ingress {ic.namespace}/{ic.name}: host {host}: service "
            f"{ic.namespace}/{service_ref.name} not found"
        )
    port = _resolve_port(ic, host, service, service_ref.port)
    cluster_name = f"{service_ref.name}.{ic.namespace}.svc.cluster.local"

    if service.spec.type == "ExternalName":
        hosts = [f"{service.spec.external_name}:{port}"]
    elif ic.is_set(SERVICE_PROXY_UPSTREAM):
        hosts = [f"{cluster_name}:{port}"]
    else:
        groups = ic.endpoints.get((ic.namespace, service_ref.name))
        hosts = _endpoint_hosts(service_ref.port, service.spec.ports or [], groups)
        if not hosts:
            # No ready endpoints matched; let cluster DNS resolve the service.
            hosts = [f"{cluster_name}:{port}"]
        elif ic.is_set(SECURE_UPSTREAM) and not route.tls_server_name:
            route.tls_server_name = cluster_name

    scheme = "https" if ic.is_set(SECURE_UPSTREAM) else "http"
    route.to = sorted(f"{scheme}://{upstream}" for upstream in hosts)


def _endpoint_port_matcher(port_ref: Any, service_ports: list[Any]) -> Callable[[Any], bool] | None:
    if port_ref.name:
        # Slice ports carry the name of the service port they back.
        return lambda group: group.name == port_ref.name

    for service_port in service_ports:
        if service_port.port != port_ref.number:
            continue
        if service_port.name:
            port_name = service_port.name
            return lambda group: group.name == port_name
        target = service_port.target_port if service_port.target_port is not None else service_port.port
        if isinstance(target, int):
            return lambda group: group.port == target
        # Single unnamed port with a named target: the slices hold only that port.
        return lambda group: True
    return None


def _endpoint_hosts(
    port_ref: Any, service_ports: list[Any], groups: list[EndpointGroup] | None
) -> list[str]:
    if not groups or port_ref is None:
        return []
    matches = _endpoint_port_matcher(port_ref, service_ports)
    if matches is None:
        return []
    hosts: list[str] = []
    for group in groups:
        if matches(group):
            hosts.extend(f"{address}:{group.port}" for address in group.addresses)
    return hosts


def ingress_certificates(ic: IngressConfig) -> list[Certificate]:
    """TLS certificates referenced by ``spec.tls``, ordered by namespace and name."""
    certificates = []
    for secret_name in tls_secret_names(ic.ingress):
        secret = ic.secrets.get((ic.namespace, secret_name))
        if secret is None:
            raise SourceError(
                f"ingress {ic.namespace}/{ic.name}: TLS secret {ic.namespace}/{secret_name} not found"
            )
        if secret.type != TLS_SECRET_TYPE:
            LOGGER.warning(
                "Ignoring secret %s/%s referenced by ingress %s: type %s is not %s",
                ic.namespace,
                secret_name,
                ic.name,
                secret.type,
                TLS_SECRET_TYPE,
            )
            continue
        certificates.append(certificate_from_secret(secret))
    return certificates
