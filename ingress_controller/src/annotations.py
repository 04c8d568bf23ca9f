from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml

from ingress_controller.src.certs import CA_CERT_KEY, TLS_CERT_KEY, TLS_PRIVATE_KEY_KEY, TLS_SECRET_TYPE
from ingress_controller.src.errors import SourceError
from ingress_controller.src.routes import Route

SECURE_UPSTREAM = "secure_upstream"
PATH_REGEX = "path_regex"
SERVICE_PROXY_UPSTREAM = "service_proxy_upstream"
ROUTE_NAME = "name"

TLS_CUSTOM_CA_SECRET = "tls_custom_ca_secret"
TLS_CLIENT_SECRET = "tls_client_secret"
TLS_DOWNSTREAM_CLIENT_CA_SECRET = "tls_downstream_client_ca_secret"

_BOOL_KEYS = frozenset(
    {
        "cors_allow_preflight",
        "allow_public_unauthenticated_access",
        "allow_any_authenticated_user",
        "allow_spdy",
        "allow_websockets",
        "preserve_host_header",
        "pass_identity_headers",
        "tls_skip_verify",
    }
)
_STRING_KEYS = frozenset(
    {
        "timeout",
        "idle_timeout",
        "host_rewrite",
        "host_rewrite_header",
        "host_path_regex_rewrite_pattern",
        "host_path_regex_rewrite_substitution",
        "tls_server_name",
    }
)
_HEADER_MAP_KEYS = frozenset({"set_request_headers", "set_response_headers"})
_STRING_LIST_KEYS = frozenset({"remove_request_headers"})
_MAPPING_LIST_KEYS = frozenset({"rewrite_response_headers", "health_checks"})
_MAPPING_KEYS = frozenset({"outlier_detection", "lb_config"})

BASE_ANNOTATIONS = (
    _BOOL_KEYS
    | _STRING_KEYS
    | _HEADER_MAP_KEYS
    | _STRING_LIST_KEYS
    | frozenset({"rewrite_response_headers"})
)
ENVOY_ANNOTATIONS = frozenset({"health_checks", "outlier_detection", "lb_config"})
POLICY_ANNOTATIONS = frozenset(
    {"allowed_users", "allowed_groups", "allowed_domains", "allowed_idp_claims", "policy"}
)
TLS_ANNOTATIONS = frozenset(
    {TLS_CUSTOM_CA_SECRET, TLS_CLIENT_SECRET, TLS_DOWNSTREAM_CLIENT_CA_SECRET}
)
HANDLED_ELSEWHERE = frozenset({SECURE_UPSTREAM, PATH_REGEX, SERVICE_PROXY_UPSTREAM, ROUTE_NAME})


@dataclass
class AnnotationGroups:
    base: dict[str, str] = field(default_factory=dict)
    envoy: dict[str, str] = field(default_factory=dict)
    policy: dict[str, str] = field(default_factory=dict)
    tls: dict[str, str] = field(default_factory=dict)
    other: dict[str, str] = field(default_factory=dict)


def split_annotations(annotations: Mapping[str, str] | None, prefix: str) -> AnnotationGroups:
    """Strip ``prefix/`` from matching keys and sort them into groups.

    Keys outside the prefix are ignored; an unknown key inside it is an error
    so that typos do not silently disable a security setting.
    """
    groups = AnnotationGroups()
    key_prefix = f"{prefix}/"
    for full_key, value in (annotations or {}).items():
        if not full_key.startswith(key_prefix):
            continue
        key = full_key[len(key_prefix) :]
        for known, target in (
            (BASE_ANNOTATIONS, groups.base),
            (ENVOY_ANNOTATIONS, groups.envoy),
            (POLICY_ANNOTATIONS, groups.policy),
            (TLS_ANNOTATIONS, groups.tls),
            (HANDLED_ELSEWHERE, groups.other),
        ):
            if key in known:
                target[key] = value
                break
        else:
            raise SourceError(f"unknown {key_prefix}{key}")
    return groups


def is_annotation_set(annotations: Mapping[str, str] | None, prefix: str, name: str) -> bool:
    value = (annotations or {}).get(f"{prefix}/{name}", "")
    return value.strip().lower() == "true"


def annotation_secret_names(annotations: Mapping[str, str] | None, prefix: str) -> list[str]:
    """Names of secrets referenced by TLS annotations, for dependency fetching."""
    groups = split_annotations(annotations, prefix)
    return sorted({value.strip() for value in groups.tls.values() if value.strip()})


def parse_value(key: str, raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise SourceError(f"{key}: {exc}") from exc


def _coerce(key: str, value: Any) -> Any:
    if key in _BOOL_KEYS:
        if not isinstance(value, bool):
            raise SourceError(f"{key}: expected a boolean, got {value!r}")
        return value
    if key in _STRING_KEYS:
        if isinstance(value, (dict, list)) or value is None:
            raise SourceError(f"{key}: expected a string, got {value!r}")
        return str(value)
    if key in _HEADER_MAP_KEYS:
        if not isinstance(value, dict):
            raise SourceError(f"{key}: expected a mapping of header names to values")
        return {str(name): str(header) for name, header in value.items()}
    if key in _STRING_LIST_KEYS:
        if not isinstance(value, list):
            raise SourceError(f"{key}: expected a list of header names")
        return [str(item) for item in value]
    if key in _MAPPING_LIST_KEYS:
        if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
            raise SourceError(f"{key}: expected a list of objects")
        return value
    if key in _MAPPING_KEYS:
        if not isinstance(value, dict):
            raise SourceError(f"{key}: expected an object")
        return value
    raise SourceError(f"{key}: unsupported annotation")


def _policy_documents(values: Mapping[str, str]) -> list[dict[str, Any]]:
    documents: list[dict[str, Any]] = []
    allow: dict[str, Any] = {}
    for key in ("allowed_users", "allowed_groups", "allowed_domains"):
        if key not in values:
            continue
        parsed = parse_value(key, values[key])
        if not isinstance(parsed, list):
            raise SourceError(f"{key}: expected a list")
        allow[key] = [str(item) for item in parsed]
    if "allowed_idp_claims" in values:
        claims = parse_value("allowed_idp_claims", values["allowed_idp_claims"])
        if not isinstance(claims, dict):
            raise SourceError("allowed_idp_claims: expected an object")
        allow["allowed_idp_claims"] = claims
    if allow:
        documents.append(allow)

    if "policy" in values:
        policy = parse_value("policy", values["policy"])
        if isinstance(policy, dict):
            documents.append(policy)
        elif isinstance(policy, list) and all(isinstance(item, dict) for item in policy):
            documents.extend(policy)
        else:
            raise SourceError("policy: expected an object or a list of objects")
    return documents


def _secret_value(secret: Any, key: str, annotation: str) -> str:
    value = (secret.data or {}).get(key)
    if not value:
        raise SourceError(
            f"{annotation}: secret {secret.metadata.namespace}/{secret.metadata.name} "
            f"has no {key!r} key"
        )
    return value


def _apply_tls(
    route: Route,
    values: Mapping[str, str],
    namespace: str,
    secrets: Mapping[tuple[str, str], Any],
) -> None:
    for key, raw_name in values.items():
        name = raw_name.strip()
        secret = secrets.get((namespace, name))
        if secret is None:
            raise SourceError(f"{key}: secret {namespace}/{name} not found")
        # Secret data is already base64 encoded, which is what the route expects.
        if key == TLS_CUSTOM_CA_SECRET:
            route.tls_custom_ca = _secret_value(secret, CA_CERT_KEY, key)
        elif key == TLS_DOWNSTREAM_CLIENT_CA_SECRET:
            route.tls_downstream_client_ca = _secret_value(secret, CA_CERT_KEY, key)
        elif key == TLS_CLIENT_SECRET:
            if secret.type != TLS_SECRET_TYPE:
                raise SourceError(
                    f"{key}: secret {namespace}/{name} should be of type {TLS_SECRET_TYPE}, "
                    f"got {secret.type}"
                )
            route.tls_client_cert = _secret_value(secret, TLS_CERT_KEY, key)
            route.tls_client_key = _secret_value(secret, TLS_PRIVATE_KEY_KEY, key)


def apply_annotations(
    route: Route,
    annotations: Mapping[str, str] | None,
    prefix: str,
    namespace: str,
    secrets: Mapping[tuple[str, str], Any],
) -> None:
    """Apply prefixed annotations to a route template in place.

    Values are YAML, so ``"true"`` is a boolean and ``"{X-A: b}"`` a mapping.
    """
    groups = split_annotations(annotations, prefix)
    for key, raw in sorted({**groups.base, **groups.envoy}.items()):
        setattr(route, key, _coerce(key, parse_value(key, raw)))
    route.policies.extend(_policy_documents(groups.policy))
    _apply_tls(route, groups.tls, namespace, secrets)
