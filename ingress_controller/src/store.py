from __future__ import annotations

import logging
from typing import Protocol

from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap, V1ObjectMeta

from ingress_controller.src.configuration import Configuration
from ingress_controller.src.errors import StoreError

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"


class ConfigStore(Protocol):
    def get(self) -> Configuration | None: ...

    def put(self, cfg: Configuration) -> None: ...


class ConfigMapStore:
    """Persist the configuration as canonical JSON in one fixed ConfigMap key.

    A missing ConfigMap or key reads as ``None`` (no configuration yet), not as
    an error.  The ConfigMap is created on the first write.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        name: str,
        key: str = "config.json",
        managed_by: str = "accessgate-ingress-controller",
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.name = name
        self.key = key
        self.managed_by = managed_by
        self.logger = logger or logging.getLogger(__name__)

    def get(self) -> Configuration | None:
        try:
            config_map = self.core_api.read_namespaced_config_map(name=self.name, namespace=self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise StoreError(
                f"read configmap {self.namespace}/{self.name}: {exc.status} {exc.reason}"
            ) from exc

        raw = (config_map.data or {}).get(self.key)
        if not raw:
            return None
        try:
            return Configuration.loads(raw)
        except (ValueError, TypeError) as exc:
            raise StoreError(f"decode configmap {self.namespace}/{self.name} key {self.key}: {exc}") from exc

    def put(self, cfg: Configuration) -> None:
        body = V1ConfigMap(
            metadata=V1ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                labels={MANAGED_BY_LABEL: self.managed_by},
            ),
            data={self.key: cfg.dumps()},
        )
        try:
            self.core_api.replace_namespaced_config_map(name=self.name, namespace=self.namespace, body=body)
            return
        except ApiException as exc:
            if exc.status != 404:
                raise StoreError(
                    f"write configmap {self.namespace}/{self.name}: {exc.status} {exc.reason}"
                ) from exc

        self.logger.info("Creating configuration ConfigMap %s/%s", self.namespace, self.name)
        try:
            self.core_api.create_namespaced_config_map(namespace=self.namespace, body=body)
        except ApiException as exc:
            raise StoreError(
                f"create configmap {self.namespace}/{self.name}: {exc.status} {exc.reason}"
            ) from exc
