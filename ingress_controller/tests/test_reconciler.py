from __future__ import annotations

import json

import pytest

from ingress_controller.src.configuration import Configuration, GlobalSettings
from ingress_controller.src.errors import StoreError, ValidationError
from ingress_controller.src.gateway import AttachedRoute, GatewayConfig
from ingress_controller.src.reconciler import DEBUG_ROUTE_FROM, ConfigReconciler
from ingress_controller.tests.factories import (
    MemoryStore,
    make_certificate,
    make_ingress,
    make_ingress_config,
    make_path,
    make_tls_secret,
    tls_entry,
)


class RejectingValidator:
    def __init__(self) -> None:
        self.calls = 0

    def validate(self, cfg: Configuration) -> tuple[bool, str]:
        self.calls += 1
        return False, "nope"


def froms(store: MemoryStore) -> list[str]:
    return [route.from_ for route in store.current.routes]


def gateway_config(hostname: str = "gw.example.com") -> GatewayConfig:
    route = {
        "metadata": {"name": "web", "namespace": "apps"},
        "spec": {"rules": [{"backendRefs": [{"name": "web", "port": 80}]}]},
    }
    return GatewayConfig(routes=[AttachedRoute(route=route, hostnames=[hostname], valid_backends={(0, 0)})])


# ---------------------------------------------------------------------------
# upsert / delete
# ---------------------------------------------------------------------------


def test_upsert_into_empty_store_writes_routes_and_used_certificates() -> None:
    store = MemoryStore()
    ingress = make_ingress(tls=[tls_entry("tls", ["a.example.com"])])
    ic = make_ingress_config(ingress, secrets=[make_tls_secret("tls")])

    assert ConfigReconciler(store).upsert(ic)

    assert froms(store) == ["https://a.example.com"]
    assert [cert.id for cert in store.current.certificates] == ["default/tls"]


def test_upsert_is_idempotent() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)

    assert reconciler.upsert(make_ingress_config())
    assert not reconciler.upsert(make_ingress_config())
    assert len(store.writes) == 1


def test_upsert_replaces_all_routes_of_the_ingress() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.upsert(make_ingress_config(make_ingress(paths=[make_path("/a"), make_path("/b")])))

    reconciler.upsert(make_ingress_config(make_ingress(paths=[make_path("/c")])))

    assert [route.prefix for route in store.current.routes] == ["/c"]


def test_upsert_leaves_other_ingresses_alone() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.upsert(make_ingress_config(make_ingress(name="one", host="one.example.com")))

    reconciler.upsert(make_ingress_config(make_ingress(name="two", host="two.example.com")))

    assert froms(store) == ["https://one.example.com", "https://two.example.com"]


def test_unused_certificates_are_not_committed() -> None:
    store = MemoryStore()
    other = make_certificate(["elsewhere.example.org"])
    ingress = make_ingress(tls=[tls_entry("tls", ["a.example.com"])])

    ConfigReconciler(store).upsert(make_ingress_config(ingress, secrets=[make_tls_secret("tls", certificate=other)]))

    assert store.current.certificates == []


def test_delete_removes_every_route_of_the_ingress() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.upsert(make_ingress_config(make_ingress(paths=[make_path("/a"), make_path("/b")])))

    assert reconciler.delete("default", "web")
    assert store.current.routes == []
    assert not reconciler.delete("default", "web")


def test_validation_failure_leaves_store_untouched() -> None:
    store = MemoryStore()
    validator = RejectingValidator()

    with pytest.raises(ValidationError, match="configuration rejected: nope"):
        ConfigReconciler(store, validator=validator).upsert(make_ingress_config())

    assert store.writes == []


def test_unchanged_configuration_skips_validation() -> None:
    store = MemoryStore(Configuration())
    validator = RejectingValidator()

    assert not ConfigReconciler(store, validator=validator).delete("default", "ghost")
    assert validator.calls == 0


def test_store_errors_propagate() -> None:
    store = MemoryStore()
    store.put_error = StoreError("write failed")

    with pytest.raises(StoreError):
        ConfigReconciler(store).upsert(make_ingress_config())


# ---------------------------------------------------------------------------
# set (full resync)
# ---------------------------------------------------------------------------


def test_set_rebuilds_ingress_routes_and_reports_failures() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.upsert(make_ingress_config(make_ingress(name="stale", host="stale.example.com")))

    good = make_ingress_config(make_ingress(name="good", host="good.example.com"))
    bad = make_ingress_config(make_ingress(name="bad", host="bad.example.com"), services=[])
    result = reconciler.set([good, bad])

    assert result.changed
    assert list(result.failed) == [("default", "bad")]
    assert "service default/web not found" in result.failed[("default", "bad")]
    assert froms(store) == ["https://good.example.com"]


def test_set_with_invalid_source_keeps_other_valid_sources() -> None:
    store = MemoryStore()
    ingress = make_ingress(name="broken", host="broken.example.com")
    ingress.metadata.annotations = {"ingress.accessgate.io/allow_websockets": "maybe"}

    result = ConfigReconciler(store).set([make_ingress_config(ingress), make_ingress_config()])

    assert ("default", "broken") in result.failed
    assert froms(store) == ["https://a.example.com"]


def test_set_preserves_settings_and_gateway_routes() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.set_config(GlobalSettings(authenticate_service_url="https://auth.example.com"))
    reconciler.set_gateway_config(gateway_config())

    reconciler.set([make_ingress_config()])

    assert store.current.settings.authenticate_service_url == "https://auth.example.com"
    assert sorted(froms(store)) == ["https://a.example.com", "https://gw.example.com"]


def test_set_with_identical_listing_is_unchanged() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.set([make_ingress_config()])

    assert not reconciler.set([make_ingress_config()]).changed
    assert len(store.writes) == 1


# ---------------------------------------------------------------------------
# settings, gateway routes, debug route
# ---------------------------------------------------------------------------


def test_set_config_serves_settings_certificate_for_authenticate_host() -> None:
    store = MemoryStore()
    auth_cert = make_certificate(["auth.example.com"], cert_id="settings/auth")
    settings = GlobalSettings(authenticate_service_url="https://auth.example.com", certificates=[auth_cert])

    assert ConfigReconciler(store).set_config(settings)

    assert store.current.certificates == [auth_cert]


def test_set_gateway_config_replaces_previous_gateway_routes() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.upsert(make_ingress_config())
    reconciler.set_gateway_config(gateway_config("old.example.com"))

    reconciler.set_gateway_config(gateway_config("new.example.com"))

    assert sorted(froms(store)) == ["https://a.example.com", "https://new.example.com"]
    gateway_ids = [json.loads(route.id) for route in store.current.routes if "k" in json.loads(route.id)]
    assert [route_id["k"] for route_id in gateway_ids] == ["HTTPRoute"]


def test_ingress_delete_does_not_touch_gateway_route_with_same_name() -> None:
    store = MemoryStore()
    reconciler = ConfigReconciler(store)
    reconciler.set_gateway_config(gateway_config())

    assert not reconciler.delete("apps", "web")
    assert froms(store) == ["https://gw.example.com"]


def test_debug_admin_route_is_added() -> None:
    store = MemoryStore()

    ConfigReconciler(store, debug_admin_route=True).upsert(make_ingress_config())

    assert DEBUG_ROUTE_FROM in froms(store)


def test_load_of_empty_store_is_empty_configuration() -> None:
    assert ConfigReconciler(MemoryStore()).load().dumps() == Configuration().dumps()
