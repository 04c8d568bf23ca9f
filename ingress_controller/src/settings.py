from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from ingress_controller.src.errors import ConfigError


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration, built once at startup.

    Attributes (environment variable, default):
        watch_namespaces:  ``WATCH_NAMESPACES`` comma list; empty watches all (``""``).
        ingress_controller_name: ``INGRESS_CLASS_CONTROLLER``; IngressClasses with this
            ``spec.controller`` are ours (``accessgate.io/ingress-controller``).
        annotation_prefix: ``ANNOTATION_PREFIX`` for route annotations (``ingress.accessgate.io``).
        gateway_controller_name: ``GATEWAY_CLASS_CONTROLLER`` (``accessgate.io/gateway-controller``).
        enable_ingress:    ``ENABLE_INGRESS`` (``true``).
        enable_gateway_api: ``ENABLE_GATEWAY_API`` (``false``).
        config_namespace:  ``CONFIG_NAMESPACE`` holding the configuration ConfigMap (``accessgate``).
        config_name:       ``CONFIG_NAME`` (``accessgate-config``).
        config_key:        ``CONFIG_KEY`` (``config.json``).
        health_port:       ``HEALTH_PORT`` (``8080``).
        workers:           ``WORKERS`` concurrent per-object reconciliations (``4``).
        initial_sync_timeout_seconds: ``INITIAL_SYNC_TIMEOUT_SECONDS`` (``300``).
        gateway_resync_seconds: ``GATEWAY_RESYNC_SECONDS`` (``30``).
        lock_poll_interval_ms: ``LOCK_POLL_INTERVAL_MS`` (``50``).
        debug_admin_route: ``DEBUG_ENVOY_ADMIN_ROUTE`` (``false``).
        post_ingress_events: ``UPDATE_INGRESS_EVENTS`` (``true``).
        status_service:    ``UPDATE_STATUS_FROM_SERVICE`` ``namespace/name`` of the proxy Service
            whose load balancer addresses are copied to Ingress and Gateway status;
            unset leaves status alone (``""``).
        settings_name:     ``SETTINGS_NAME`` of the cluster-scoped Settings object feeding the
            global settings; unset disables the settings source (``""``).
        settings_resync_seconds: ``SETTINGS_RESYNC_SECONDS`` (``30``).
    """

    watch_namespaces: tuple[str, ...] = ()
    ingress_controller_name: str = "accessgate.io/ingress-controller"
    annotation_prefix: str = "ingress.accessgate.io"
    gateway_controller_name: str = "accessgate.io/gateway-controller"
    enable_ingress: bool = True
    enable_gateway_api: bool = False
    config_namespace: str = "accessgate"
    config_name: str = "accessgate-config"
    config_key: str = "config.json"
    health_port: int = 8080
    workers: int = 4
    initial_sync_timeout_seconds: int = 300
    gateway_resync_seconds: int = 30
    lock_poll_interval_ms: int = 50
    debug_admin_route: bool = False
    post_ingress_events: bool = True
    status_service: tuple[str, str] | None = None
    settings_name: str = ""
    settings_resync_seconds: int = 30


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def parse_namespaced_name(value: str, name: str) -> tuple[str, str]:
    namespace, sep, obj_name = value.strip().partition("/")
    if not sep or not namespace or not obj_name or "/" in obj_name:
        raise ConfigError(f"{name} must be namespace/name, got: {value!r}")
    return namespace, obj_name


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Build :class:`ControllerSettings` from the environment, validating every value."""
    values = env if env is not None else os.environ
    defaults = ControllerSettings()

    namespaces = tuple(
        sorted({part.strip() for part in values.get("WATCH_NAMESPACES", "").split(",") if part.strip()})
    )
    status_service = None
    if values.get("UPDATE_STATUS_FROM_SERVICE", "").strip():
        status_service = parse_namespaced_name(
            values["UPDATE_STATUS_FROM_SERVICE"], "UPDATE_STATUS_FROM_SERVICE"
        )
    annotation_prefix = _env_str(values, "ANNOTATION_PREFIX", defaults.annotation_prefix).rstrip("/")
    if "/" in annotation_prefix:
        raise ConfigError(f"ANNOTATION_PREFIX must not contain '/', got: {annotation_prefix!r}")

    settings = ControllerSettings(
        watch_namespaces=namespaces,
        ingress_controller_name=_env_str(
            values, "INGRESS_CLASS_CONTROLLER", defaults.ingress_controller_name
        ),
        annotation_prefix=annotation_prefix,
        gateway_controller_name=_env_str(
            values, "GATEWAY_CLASS_CONTROLLER", defaults.gateway_controller_name
        ),
        enable_ingress=parse_bool(values.get("ENABLE_INGRESS"), default=defaults.enable_ingress),
        enable_gateway_api=parse_bool(
            values.get("ENABLE_GATEWAY_API"), default=defaults.enable_gateway_api
        ),
        config_namespace=_env_str(values, "CONFIG_NAMESPACE", defaults.config_namespace),
        config_name=_env_str(values, "CONFIG_NAME", defaults.config_name),
        config_key=_env_str(values, "CONFIG_KEY", defaults.config_key),
        health_port=env_int(values, "HEALTH_PORT", defaults.health_port, minimum=0, maximum=65535),
        workers=env_int(values, "WORKERS", defaults.workers, minimum=1, maximum=64),
        initial_sync_timeout_seconds=env_int(
            values, "INITIAL_SYNC_TIMEOUT_SECONDS", defaults.initial_sync_timeout_seconds, minimum=1
        ),
        gateway_resync_seconds=env_int(
            values, "GATEWAY_RESYNC_SECONDS", defaults.gateway_resync_seconds, minimum=1
        ),
        lock_poll_interval_ms=env_int(
            values, "LOCK_POLL_INTERVAL_MS", defaults.lock_poll_interval_ms, minimum=1, maximum=1000
        ),
        debug_admin_route=parse_bool(
            values.get("DEBUG_ENVOY_ADMIN_ROUTE"), default=defaults.debug_admin_route
        ),
        post_ingress_events=parse_bool(
            values.get("UPDATE_INGRESS_EVENTS"), default=defaults.post_ingress_events
        ),
        status_service=status_service,
        settings_name=values.get("SETTINGS_NAME", defaults.settings_name).strip(),
        settings_resync_seconds=env_int(
            values, "SETTINGS_RESYNC_SECONDS", defaults.settings_resync_seconds, minimum=1
        ),
    )
    if not settings.enable_ingress and not settings.enable_gateway_api:
        raise ConfigError("at least one of ENABLE_INGRESS or ENABLE_GATEWAY_API must be true")
    return settings
