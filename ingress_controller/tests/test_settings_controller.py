from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from ingress_controller.src.errors import SourceError, ValidationError
from ingress_controller.src.kube import KubeClients
from ingress_controller.src.lock import SyncLock
from ingress_controller.src.reconciler import ConfigReconciler
from ingress_controller.src.settings import ControllerSettings
from ingress_controller.src.settings_controller import (
    SETTINGS_GROUP,
    SETTINGS_PLURAL,
    SETTINGS_VERSION,
    SettingsController,
)
from ingress_controller.tests.factories import (
    MemoryStore,
    make_certificate,
    make_secret,
    make_tls_secret,
)

SETTINGS = ControllerSettings(settings_name="global", initial_sync_timeout_seconds=5, settings_resync_seconds=1)


def settings_object(spec: dict[str, Any], status: dict[str, Any] | None = None) -> dict[str, Any]:
    obj: dict[str, Any] = {"metadata": {"name": "global"}, "spec": spec}
    if status is not None:
        obj["status"] = status
    return obj


def make_controller(
    obj: dict[str, Any] | None, secrets: list[Any] | None = None
) -> tuple[SettingsController, MagicMock, MemoryStore]:
    custom = MagicMock()
    if obj is None:
        custom.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    else:
        custom.get_cluster_custom_object.return_value = obj
    by_key = {(secret.metadata.namespace, secret.metadata.name): secret for secret in secrets or []}

    def read_secret(name: str, namespace: str) -> Any:
        try:
            return by_key[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    core = MagicMock()
    core.read_namespaced_secret.side_effect = read_secret
    store = MemoryStore()
    controller = SettingsController(
        KubeClients(core=core, networking=MagicMock(), custom_objects=custom, discovery=MagicMock()),  # type: ignore[arg-type]
        SyncLock(ConfigReconciler(store), poll_interval=0.01),
        SETTINGS,
    )
    return controller, custom, store


def test_settings_object_is_committed_as_global_settings() -> None:
    certificate = make_certificate(["auth.example.com"])
    spec = {
        "authenticateServiceURL": "https://auth.example.com",
        "certificates": ["accessgate/wildcard"],
        "identity_provider": {"provider": "oidc", "url": "https://idp.example.com"},
    }
    controller, custom, store = make_controller(
        settings_object(spec), [make_tls_secret("wildcard", "accessgate", certificate)]
    )

    assert controller.reconcile() is True

    assert store.current is not None
    global_settings = store.current.settings
    assert global_settings.authenticate_service_url == "https://auth.example.com"
    assert [cert.id for cert in global_settings.certificates] == ["accessgate/wildcard"]
    assert global_settings.options == {"identity_provider": {"provider": "oidc", "url": "https://idp.example.com"}}
    custom.get_cluster_custom_object.assert_called_once_with(
        group=SETTINGS_GROUP, version=SETTINGS_VERSION, plural=SETTINGS_PLURAL, name="global"
    )
    body = custom.patch_cluster_custom_object_status.call_args.kwargs["body"]
    assert body["status"]["reconciled"] is True
    assert "error" not in body["status"]


def test_unchanged_settings_are_not_written_again() -> None:
    controller, custom, store = make_controller(
        settings_object({"authenticateServiceURL": "https://auth.example.com"}, status={"reconciled": True, "ts": "then"})
    )

    assert controller.reconcile() is True
    assert controller.reconcile() is False

    assert len(store.writes) == 1
    custom.patch_cluster_custom_object_status.assert_not_called()


def test_missing_and_unusable_certificate_secrets_are_skipped() -> None:
    spec = {"certificates": ["accessgate/missing", "accessgate/opaque"], "timeout": "30s"}
    controller, _, store = make_controller(
        settings_object(spec), [make_secret("opaque", {"tls.crt": "x"}, namespace="accessgate")]
    )

    controller.reconcile()

    assert store.current is not None
    assert store.current.settings.certificates == []
    assert store.current.settings.options == {"timeout": "30s"}


def test_malformed_certificate_reference_is_reported() -> None:
    controller, custom, store = make_controller(settings_object({"certificates": ["wildcard"]}))

    with pytest.raises(SourceError, match="certificates must be namespace/name"):
        controller.reconcile()

    assert store.writes == []
    status = custom.patch_cluster_custom_object_status.call_args.kwargs["body"]["status"]
    assert status["reconciled"] is False
    assert "certificates must be namespace/name" in status["error"]


def test_invalid_authenticate_url_is_not_committed() -> None:
    controller, custom, store = make_controller(settings_object({"authenticateServiceURL": "http://auth"}))

    with pytest.raises(ValidationError, match="https url"):
        controller.reconcile()

    assert store.writes == []
    status = custom.patch_cluster_custom_object_status.call_args.kwargs["body"]["status"]
    assert status["reconciled"] is False


def test_missing_settings_object_leaves_settings_alone() -> None:
    controller, custom, store = make_controller(None)

    assert controller.reconcile() is False

    assert store.writes == []
    custom.patch_cluster_custom_object_status.assert_not_called()


def test_run_forever_resyncs_until_shutdown() -> None:
    controller, _, _ = make_controller(None)
    stop = threading.Event()
    calls = 0

    def reconcile(cancel: threading.Event | None = None) -> bool:
        nonlocal calls
        calls += 1
        if calls == 2:
            stop.set()
        return False

    controller.reconcile = reconcile  # type: ignore[method-assign]

    controller.run_forever(stop)

    assert calls == 2


def test_run_forever_stops_on_rbac_denied() -> None:
    controller, _, _ = make_controller(None)
    controller.reconcile = MagicMock(side_effect=ApiException(status=403, reason="Forbidden"))  # type: ignore[method-assign]
    stop = threading.Event()

    controller.run_forever(stop)

    assert stop.is_set()
    controller.reconcile.assert_called_once()
