from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ingress_controller.src.gateway import AttachedRoute, backend_ref_key
from ingress_controller.src.ingress import route_name
from ingress_controller.src.routes import HTTP_ROUTE_KIND, Route, RouteID, sort_routes

LOGGER = logging.getLogger(__name__)

POLICY_FILTER_GROUP = "gateway.accessgate.io"
POLICY_FILTER_KIND = "PolicyFilter"

_PATH_MATCH_FIELDS = {"Exact": "path", "PathPrefix": "prefix", "RegularExpression": "regex"}


def _direct_response(status: int, body: str) -> dict[str, Any]:
    return {"status": status, "body": body}


def _apply_filters(
    template: Route,
    filters: list[Mapping[str, Any]],
    namespace: str,
    policy_filters: Mapping[tuple[str, str], Mapping[str, Any]],
) -> bool:
    """Apply route-level filters to ``template``; return False on an unsupported filter."""
    for item in filters:
        filter_type = item.get("type")
        if filter_type == "RequestHeaderModifier":
            modifier = item.get("requestHeaderModifier") or {}
            for header in (modifier.get("set") or []) + (modifier.get("add") or []):
                template.set_request_headers[header["name"]] = header["value"]
            template.remove_request_headers.extend(modifier.get("remove") or [])
        elif filter_type == "RequestRedirect":
            spec = item.get("requestRedirect") or {}
            redirect: dict[str, Any] = {}
            for source, target in (
                ("scheme", "scheme_redirect"),
                ("hostname", "host_redirect"),
                ("port", "port_redirect"),
                ("statusCode", "response_code"),
            ):
                if spec.get(source) is not None:
                    redirect[target] = spec[source]
            template.redirect = redirect
        elif filter_type == "ExtensionRef":
            ref = item.get("extensionRef") or {}
            policy = None
            if ref.get("group") == POLICY_FILTER_GROUP and ref.get("kind") == POLICY_FILTER_KIND:
                policy = policy_filters.get((namespace, ref.get("name", "")))
            if policy is None:
                LOGGER.warning(
                    "HTTPRoute in %s references unknown extension filter %s/%s %s",
                    namespace,
                    ref.get("group"),
                    ref.get("kind"),
                    ref.get("name"),
                )
                return False
            template.policies.append(dict(policy))
        else:
            LOGGER.warning("HTTPRoute in %s uses unsupported filter type %s", namespace, filter_type)
            return False
    return True


def _upstreams(attached: AttachedRoute, rule_index: int, rule: Mapping[str, Any]) -> list[str]:
    urls = []
    for backend_index, ref in enumerate(rule.get("backendRefs") or []):
        if (rule_index, backend_index) not in attached.valid_backends:
            continue
        weight = ref.get("weight")
        if weight == 0:
            continue
        key = backend_ref_key(ref, attached.namespace)
        url = f"http://{key.name}.{key.namespace}.svc.cluster.local:{ref.get('port')}"
        urls.append(url if weight is None else f"{url},{weight}")
    return sorted(urls)


def _supported_matches(attached: AttachedRoute, rule: Mapping[str, Any]) -> list[Mapping[str, Any] | None]:
    matches = rule.get("matches") or []
    if not matches:
        return [None]
    supported = []
    for match in matches:
        if match.get("headers") or match.get("queryParams") or match.get("method"):
            LOGGER.info(
                "Skipping HTTPRoute %s/%s match with header, query or method conditions",
                attached.namespace,
                attached.name,
            )
            continue
        supported.append(match)
    return supported


def translate_http_route(
    attached: AttachedRoute,
    policy_filters: Mapping[tuple[str, str], Mapping[str, Any]] | None = None,
) -> list[Route]:
    """Produce one route per hostname, rule and supported match of an attached HTTPRoute."""
    policy_filters = policy_filters or {}
    routes: list[Route] = []
    for rule_index, rule in enumerate((attached.route.get("spec") or {}).get("rules") or []):
        template = Route(preserve_host_header=True)
        if not _apply_filters(template, rule.get("filters") or [], attached.namespace, policy_filters):
            template.redirect = None
            template.response = _direct_response(500, "invalid filter")
        else:
            template.to = _upstreams(attached, rule_index, rule)
            if not template.to and template.redirect is None:
                template.response = _direct_response(500, "no valid backend")

        for match_index, match in enumerate(_supported_matches(attached, rule)):
            path_match = (match or {}).get("path") or {}
            match_field = _PATH_MATCH_FIELDS.get(path_match.get("type", "PathPrefix"))
            if match is not None and match_field is None:
                LOGGER.info("Skipping unsupported path match type %s", path_match.get("type"))
                continue
            for hostname in attached.hostnames:
                route = template.clone()
                route.from_ = f"https://{hostname}"
                if match is not None:
                    setattr(route, match_field, path_match.get("value", "/"))
                route.id = RouteID(
                    name=attached.name,
                    namespace=attached.namespace,
                    host=hostname,
                    path=f"rules/{rule_index}/matches/{match_index}",
                    kind=HTTP_ROUTE_KIND,
                ).encode()
                route.name = route_name(
                    attached.namespace, attached.name, hostname, route.match_key or route.regex
                )
                routes.append(route)
    return sort_routes(routes)
