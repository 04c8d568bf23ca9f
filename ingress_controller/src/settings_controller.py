from __future__ import annotations

import copy
import threading
from collections.abc import Mapping
from typing import Any

from kubernetes.client import ApiException

from ingress_controller.src.certs import (
    TLS_SECRET_TYPE,
    Certificate,
    certificate_from_secret,
    parse_certificate,
)
from ingress_controller.src.configuration import GlobalSettings
from ingress_controller.src.errors import (
    ConfigError,
    OperationCancelled,
    ReconcileError,
    SourceError,
    StoreError,
)
from ingress_controller.src.gateway import utc_now_rfc3339
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.resync import PeriodicController
from ingress_controller.src.settings import parse_namespaced_name

SETTINGS_KIND = "Settings"
SETTINGS_GROUP = "ingress.accessgate.io"
SETTINGS_VERSION = "v1"
SETTINGS_PLURAL = "settings"

AUTHENTICATE_URL_FIELD = "authenticateServiceURL"
CERTIFICATES_FIELD = "certificates"


class SettingsController(PeriodicController):
    """Feed the cluster-scoped Settings object into the global settings section.

    ``spec.authenticateServiceURL`` and the TLS secrets named in
    ``spec.certificates`` (``namespace/name``) map onto
    :class:`GlobalSettings`; every other ``spec`` key is carried as an opaque
    option.  A certificate secret that does not exist is skipped.  The outcome
    is written to the object's ``status`` when it changes.
    """

    kind = SETTINGS_KIND

    def resync_seconds(self) -> int:
        return self.settings.settings_resync_seconds

    def _read_settings(self) -> dict[str, Any] | None:
        try:
            return self.clients.custom_objects.get_cluster_custom_object(
                group=SETTINGS_GROUP,
                version=SETTINGS_VERSION,
                plural=SETTINGS_PLURAL,
                name=self.settings.settings_name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _certificates(self, names: Any) -> list[Certificate]:
        if not isinstance(names, list):
            raise SourceError(f"settings: {CERTIFICATES_FIELD} must be a list of namespace/name strings")
        certificates: list[Certificate] = []
        for entry in names:
            try:
                namespace, name = parse_namespaced_name(str(entry), CERTIFICATES_FIELD)
            except ConfigError as exc:
                raise SourceError(f"settings: {exc}") from exc
            try:
                secret = self.clients.core.read_namespaced_secret(name=name, namespace=namespace)
            except ApiException as exc:
                if exc.status != 404:
                    raise
                self.logger.info("Certificate secret %s/%s not found, skipping", namespace, name)
                continue
            if secret.type != TLS_SECRET_TYPE:
                self.logger.warning(
                    "Certificate secret %s/%s has type %s, want %s; skipping",
                    namespace,
                    name,
                    secret.type,
                    TLS_SECRET_TYPE,
                )
                continue
            try:
                certificate = certificate_from_secret(secret)
                parse_certificate(certificate)
            except ValueError as exc:
                self.logger.warning("Certificate secret %s/%s is not usable, skipping: %s", namespace, name, exc)
                continue
            certificates.append(certificate)
        return certificates

    def build_settings(self, obj: Mapping[str, Any]) -> GlobalSettings:
        spec = obj.get("spec") or {}
        if not isinstance(spec, Mapping):
            raise SourceError("settings: spec must be an object")
        url = spec.get(AUTHENTICATE_URL_FIELD, "")
        if not isinstance(url, str):
            raise SourceError(f"settings: {AUTHENTICATE_URL_FIELD} must be a string")
        options = {
            key: copy.deepcopy(value)
            for key, value in spec.items()
            if key not in {AUTHENTICATE_URL_FIELD, CERTIFICATES_FIELD}
        }
        return GlobalSettings(
            authenticate_service_url=url,
            certificates=self._certificates(spec.get(CERTIFICATES_FIELD, [])),
            options=options,
        )

    def _report(self, obj: Mapping[str, Any], error: str) -> None:
        status: dict[str, Any] = {"reconciled": not error}
        if error:
            status["error"] = error
        previous = dict(obj.get("status") or {})
        previous.pop("ts", None)
        if previous == status:
            return
        status["ts"] = utc_now_rfc3339()
        self.clients.custom_objects.patch_cluster_custom_object_status(
            group=SETTINGS_GROUP,
            version=SETTINGS_VERSION,
            plural=SETTINGS_PLURAL,
            name=self.settings.settings_name,
            body={"status": status},
        )

    def reconcile(self, cancel: threading.Event | None = None) -> bool:
        """Read the Settings object and commit it; return True if the record changed."""
        obj = self._read_settings()
        if obj is None:
            self.logger.debug(
                "Settings %s not found; global settings left unchanged", self.settings.settings_name
            )
            return False
        try:
            global_settings = self.build_settings(obj)
            changed = self.sync.set_config(
                global_settings, cancel=cancel, timeout=self.settings.initial_sync_timeout_seconds
            )
        except (OperationCancelled, StoreError):
            raise
        except ReconcileError as exc:
            self._report(obj, str(exc))
            raise
        self._report(obj, "")
        outcome = "changed" if changed else "unchanged"
        METRICS.reconciles_total.labels(kind=SETTINGS_KIND, outcome=outcome).inc()
        if changed:
            self.logger.info("Global settings updated from Settings %s", self.settings.settings_name)
        return changed
