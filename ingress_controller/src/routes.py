from __future__ import annotations

import copy
import json
from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from typing import Any

from ingress_controller.src.errors import DuplicateRouteError, ReconcileError

HTTP_ROUTE_KIND = "HTTPRoute"

# Route attributes whose JSON name differs from the Python field name.
_JSON_NAMES = {"from_": "from"}
_FIELD_NAMES = {json_name: attr for attr, json_name in _JSON_NAMES.items()}


@dataclass
class Route:
    """Canonical routing record shared by Ingress and Gateway API sources.

    ``to`` entries are upstream URLs, optionally suffixed with ``,<weight>``.
    At most one of ``path``, ``prefix`` and ``regex`` is set.  ``redirect`` and
    ``response`` replace upstreams for Gateway filters.  ``policies`` is an
    opaque list of access-policy documents.
    """

    id: str = ""
    name: str = ""
    from_: str = ""
    to: list[str] = field(default_factory=list)
    path: str = ""
    prefix: str = ""
    regex: str = ""
    redirect: dict[str, Any] | None = None
    response: dict[str, Any] | None = None
    allow_public_unauthenticated_access: bool = False
    allow_any_authenticated_user: bool = False
    cors_allow_preflight: bool = False
    preserve_host_header: bool = False
    pass_identity_headers: bool = False
    allow_websockets: bool = False
    allow_spdy: bool = False
    tls_skip_verify: bool = False
    timeout: str = ""
    idle_timeout: str = ""
    set_request_headers: dict[str, str] = field(default_factory=dict)
    remove_request_headers: list[str] = field(default_factory=list)
    set_response_headers: dict[str, str] = field(default_factory=dict)
    rewrite_response_headers: list[dict[str, Any]] = field(default_factory=list)
    host_rewrite: str = ""
    host_rewrite_header: str = ""
    host_path_regex_rewrite_pattern: str = ""
    host_path_regex_rewrite_substitution: str = ""
    tls_server_name: str = ""
    tls_custom_ca: str = ""
    tls_client_cert: str = ""
    tls_client_key: str = ""
    tls_downstream_client_ca: str = ""
    health_checks: list[dict[str, Any]] = field(default_factory=list)
    outlier_detection: dict[str, Any] | None = None
    lb_config: dict[str, Any] | None = None
    policies: list[dict[str, Any]] = field(default_factory=list)

    def clone(self) -> Route:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-ready dict, omitting unset attributes."""
        out: dict[str, Any] = {}
        for attr in fields(self):
            value = getattr(self, attr.name)
            if value is None or value is False or value == "" or value == [] or value == {}:
                continue
            out[_JSON_NAMES.get(attr.name, attr.name)] = copy.deepcopy(value)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Route:
        known = {attr.name for attr in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            attr = _FIELD_NAMES.get(key, key)
            if attr not in known:
                raise ValueError(f"unknown route attribute {key!r}")
            kwargs[attr] = copy.deepcopy(value)
        return cls(**kwargs)

    @property
    def match_key(self) -> str:
        return self.path or self.prefix


@dataclass(frozen=True)
class RouteID:
    """Stable identity of a route: owning object plus the host and path it serves.

    ``kind`` is empty for Ingress-derived routes and ``HTTPRoute`` for Gateway
    API routes, so objects of different kinds sharing a name never collide.
    """

    name: str
    namespace: str
    host: str = ""
    path: str = ""
    kind: str = ""

    def encode(self) -> str:
        payload = {"h": self.host, "n": self.name, "ns": self.namespace, "p": self.path}
        if self.kind:
            payload["k"] = self.kind
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    @classmethod
    def decode(cls, text: str) -> RouteID:
        try:
            payload = json.loads(text)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed route id {text!r}") from exc
        if not isinstance(payload, dict) or not all(
            isinstance(payload.get(key, ""), str) for key in ("h", "k", "n", "ns", "p")
        ):
            raise ValueError(f"malformed route id {text!r}")
        if not payload.get("n"):
            raise ValueError(f"route id {text!r} has no name")
        return cls(
            name=payload["n"],
            namespace=payload.get("ns", ""),
            host=payload.get("h", ""),
            path=payload.get("p", ""),
            kind=payload.get("k", ""),
        )

    def owned_by(self, name: str, namespace: str, kind: str = "") -> bool:
        return self.name == name and self.namespace == namespace and self.kind == kind


class RouteTable:
    """Routes keyed by decoded ID, used while merging route lists."""

    def __init__(self) -> None:
        self._routes: dict[RouteID, Route] = {}

    @classmethod
    def from_routes(cls, routes: Iterable[Route]) -> RouteTable:
        table = cls()
        for route in routes:
            try:
                key = RouteID.decode(route.id)
            except ValueError as exc:
                raise ReconcileError(f"route {route.name or route.from_}: {exc}") from exc
            if key in table._routes:
                raise DuplicateRouteError(f"duplicate route {route.id}")
            table._routes[key] = route
        return table

    def merge(self, other: RouteTable) -> None:
        """Overwrite entries with those from ``other``; later writer wins per ID."""
        self._routes.update(other._routes)

    def remove_owner(self, name: str, namespace: str, kind: str = "") -> int:
        """Drop every route owned by the given object, regardless of path."""
        doomed = [key for key in self._routes if key.owned_by(name, namespace, kind)]
        for key in doomed:
            del self._routes[key]
        return len(doomed)

    def remove_kind(self, kind: str) -> int:
        doomed = [key for key in self._routes if key.kind == kind]
        for key in doomed:
            del self._routes[key]
        return len(doomed)

    def to_routes(self) -> list[Route]:
        return list(self._routes.values())

    def __contains__(self, key: object) -> bool:
        return key in self._routes

    def __len__(self) -> int:
        return len(self._routes)


def sort_routes(routes: Iterable[Route]) -> list[Route]:
    """Order routes by ``path`` (or ``prefix`` when path is empty), lexicographically.

    This is plain string ordering, not most-specific-first: ``/a`` sorts before
    ``/a/b`` and ``/`` sorts before both.  First-match routing in the gateway
    depends on it.  Equal keys fall back to the route ID so the order is total.
    """
    return sorted(routes, key=lambda route: (route.match_key, route.id))
