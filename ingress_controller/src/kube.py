from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi, DiscoveryV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
GATEWAY_API_VERSION = "v1"
REFERENCE_GRANT_VERSION = "v1beta1"


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    networking: NetworkingV1Api
    custom_objects: CustomObjectsApi
    discovery: DiscoveryV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients the controllers need, using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        networking=client.NetworkingV1Api(),
        custom_objects=client.CustomObjectsApi(),
        discovery=client.DiscoveryV1Api(),
    )


def list_gateway_objects(
    custom_objects: CustomObjectsApi,
    plural: str,
    version: str = GATEWAY_API_VERSION,
) -> list[dict[str, Any]]:
    """List Gateway API custom objects across all namespaces as plain dicts."""
    response = custom_objects.list_cluster_custom_object(
        group=GATEWAY_API_GROUP, version=version, plural=plural
    )
    return list(response.get("items") or [])


def patch_gateway_status(
    custom_objects: CustomObjectsApi,
    plural: str,
    name: str,
    status: dict[str, Any],
    namespace: str | None = None,
) -> None:
    """Merge-patch the ``status`` subresource of a Gateway API object."""
    body = {"status": status}
    if namespace is None:
        custom_objects.patch_cluster_custom_object_status(
            group=GATEWAY_API_GROUP,
            version=GATEWAY_API_VERSION,
            plural=plural,
            name=name,
            body=body,
        )
        return
    custom_objects.patch_namespaced_custom_object_status(
        group=GATEWAY_API_GROUP,
        version=GATEWAY_API_VERSION,
        namespace=namespace,
        plural=plural,
        name=name,
        body=body,
    )


def _load_balancer_entries(entries: list[Any] | None) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for entry in entries or []:
        item: dict[str, Any] = {}
        if entry.ip:
            item["ip"] = entry.ip
        if entry.hostname:
            item["hostname"] = entry.hostname
        ports = []
        for port in entry.ports or []:
            status = {"port": port.port, "protocol": port.protocol}
            if port.error:
                status["error"] = port.error
            ports.append(status)
        if ports:
            item["ports"] = ports
        out.append(item)
    return out


def service_load_balancer_ingress(service: Any) -> list[dict[str, Any]]:
    """Ingress ``status.loadBalancer.ingress`` entries advertised by a proxy Service.

    A NodePort Service without load balancer ingress advertises its cluster IP.
    """
    lb_status = service.status.load_balancer if service.status is not None else None
    entries = _load_balancer_entries(lb_status.ingress if lb_status is not None else None)
    if not entries and service.spec.type == "NodePort" and service.spec.cluster_ip:
        entries = [{"ip": service.spec.cluster_ip}]
    return entries


def current_load_balancer_ingress(ingress: Any) -> list[dict[str, Any]]:
    lb_status = ingress.status.load_balancer if ingress.status is not None else None
    return _load_balancer_entries(lb_status.ingress if lb_status is not None else None)


def gateway_status_addresses(service: Any) -> list[dict[str, str]]:
    """Gateway ``status.addresses`` taken from a proxy Service's load balancer ingress."""
    lb_status = service.status.load_balancer if service.status is not None else None
    addresses: list[dict[str, str]] = []
    for entry in (lb_status.ingress if lb_status is not None else None) or []:
        if entry.ip:
            addresses.append({"type": "IPAddress", "value": entry.ip})
        elif entry.hostname:
            addresses.append({"type": "Hostname", "value": entry.hostname})
    return addresses
