from __future__ import annotations

import threading
from types import SimpleNamespace

from ingress_controller.src.registry import DependencyRegistry, ObjectKey

INGRESS = ObjectKey("Ingress", "default", "web")
OTHER_INGRESS = ObjectKey("Ingress", "default", "api")
SECRET = ObjectKey("Secret", "default", "tls")
SERVICE = ObjectKey("Service", "default", "web")


def test_object_key_from_metadata() -> None:
    obj = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="default"))

    key = ObjectKey.of(obj, "Ingress")

    assert key == INGRESS
    assert str(key) == "Ingress:default/web"
    assert str(ObjectKey("IngressClass", "", "accessgate")) == "IngressClass:accessgate"


def test_add_records_both_directions() -> None:
    registry = DependencyRegistry()

    registry.add(INGRESS, SECRET)

    assert registry.deps(INGRESS) == [SECRET]
    assert registry.deps(SECRET) == [INGRESS]


def test_deps_of_kind_filters_neighbours() -> None:
    registry = DependencyRegistry()
    registry.add(INGRESS, SECRET)
    registry.add(OTHER_INGRESS, SECRET)
    registry.add(SERVICE, SECRET)

    assert registry.deps_of_kind(SECRET, "Ingress") == [OTHER_INGRESS, INGRESS]
    assert registry.deps_of_kind(SECRET, "Service") == [SERVICE]
    assert registry.deps_of_kind(ObjectKey("Secret", "default", "missing"), "Ingress") == []


def test_delete_cascade_removes_direct_edges_and_prunes_empty_nodes() -> None:
    registry = DependencyRegistry()
    registry.add(INGRESS, SECRET)
    registry.add(INGRESS, SERVICE)
    registry.add(OTHER_INGRESS, SECRET)

    registry.delete_cascade(INGRESS)

    assert registry.deps(INGRESS) == []
    assert registry.deps(SERVICE) == []
    assert registry.deps(SECRET) == [OTHER_INGRESS]
    # Ingress and Service nodes are gone; Secret and the other Ingress remain.
    assert len(registry) == 2


def test_delete_cascade_is_one_hop() -> None:
    registry = DependencyRegistry()
    registry.add(INGRESS, SECRET)
    registry.add(SECRET, SERVICE)

    registry.delete_cascade(INGRESS)

    assert registry.deps(SECRET) == [SERVICE]


def test_delete_cascade_of_unknown_key_is_noop() -> None:
    registry = DependencyRegistry()
    registry.add(INGRESS, SECRET)

    registry.delete_cascade(ObjectKey("Ingress", "default", "ghost"))

    assert registry.deps(INGRESS) == [SECRET]


def test_concurrent_adds_are_not_lost() -> None:
    registry = DependencyRegistry()

    def add_many(index: int) -> None:
        for item in range(100):
            registry.add(ObjectKey("Ingress", "ns", f"ing-{index}"), ObjectKey("Secret", "ns", f"s-{item}"))

    threads = [threading.Thread(target=add_many, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(registry.deps_of_kind(ObjectKey("Secret", "ns", "s-0"), "Ingress")) == 8
    assert len(registry) == 108
