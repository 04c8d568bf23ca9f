from __future__ import annotations

import re
from typing import Protocol
from urllib.parse import urlsplit

from ingress_controller.src.certs import parse_certificate
from ingress_controller.src.configuration import Configuration
from ingress_controller.src.errors import CertificateError
from ingress_controller.src.routes import Route

_UPSTREAM_SCHEMES = frozenset({"http", "https"})


class Validator(Protocol):
    def validate(self, cfg: Configuration) -> tuple[bool, str]: ...


def _check_upstream(target: str) -> str | None:
    url, _, weight = target.partition(",")
    if weight and (not weight.isdigit() or int(weight) <= 0):
        return f"invalid upstream weight {weight!r} in {target!r}"
    parts = urlsplit(url)
    if parts.scheme not in _UPSTREAM_SCHEMES or not parts.hostname:
        return f"invalid upstream url {url!r}"
    return None


def _check_route(route: Route) -> str | None:
    source = urlsplit(route.from_)
    if source.scheme != "https" or not source.hostname:
        return f"from must be an https url with a host, got {route.from_!r}"
    if sum(1 for match in (route.path, route.prefix, route.regex) if match) > 1:
        return "only one of path, prefix or regex may be set"
    if route.regex:
        try:
            re.compile(route.regex)
        except re.error as exc:
            return f"invalid regex {route.regex!r}: {exc}"
    if route.redirect is None and route.response is None and not route.to:
        return "route has no upstreams"
    for target in route.to:
        problem = _check_upstream(target)
        if problem:
            return problem
    return None


class ConfigValidator:
    """Structural checks run on every configuration before it is committed."""

    def validate(self, cfg: Configuration) -> tuple[bool, str]:
        seen: set[str] = set()
        for route in cfg.routes:
            if not route.id:
                return False, f"route {route.name or route.from_}: missing id"
            if route.id in seen:
                return False, f"duplicate route id {route.id}"
            seen.add(route.id)
            problem = _check_route(route)
            if problem:
                return False, f"route {route.name or route.id}: {problem}"

        for certificate in [*cfg.certificates, *cfg.settings.certificates]:
            try:
                parse_certificate(certificate)
            except CertificateError as exc:
                return False, f"certificate {certificate.id or '<unnamed>'}: {exc}"
            if not certificate.key_bytes:
                return False, f"certificate {certificate.id or '<unnamed>'}: missing private key"

        if cfg.settings.authenticate_service_url:
            parts = urlsplit(cfg.settings.authenticate_service_url)
            if parts.scheme != "https" or not parts.hostname:
                return False, "authenticate_service_url must be an https url"
        return True, ""
