from __future__ import annotations

import json

import pytest

from ingress_controller.src.certs import Certificate
from ingress_controller.src.configuration import Configuration, GlobalSettings, ensure_deterministic_order
from ingress_controller.src.routes import Route


def test_dumps_is_canonical_json() -> None:
    cfg = Configuration(
        routes=[Route(id="r", from_="https://a.example.com", to=["http://x:80"])],
        settings=GlobalSettings(authenticate_service_url="https://auth.example.com"),
    )

    text = cfg.dumps()

    assert " " not in text
    assert json.loads(text)["routes"] == [{"from": "https://a.example.com", "id": "r", "to": ["http://x:80"]}]
    assert Configuration.loads(text).dumps() == text


def test_empty_configuration_serialises_empty_sections() -> None:
    assert Configuration().dumps() == '{"certificates":[],"routes":[],"settings":{}}'


def test_from_dict_rejects_non_object() -> None:
    with pytest.raises(ValueError):
        Configuration.loads("[]")


def test_clone_is_independent() -> None:
    cfg = Configuration(routes=[Route(id="r", to=["http://x:80"])])

    clone = cfg.clone()
    clone.routes[0].to.append("http://y:80")

    assert cfg.routes[0].to == ["http://x:80"]


def test_ensure_deterministic_order_sorts_routes_and_certificates() -> None:
    cfg = Configuration(
        routes=[Route(id="2", prefix="/b"), Route(id="1", path="/a")],
        certificates=[
            Certificate(cert_bytes=b"2", key_bytes=b"", id="ns/b"),
            Certificate(cert_bytes=b"1", key_bytes=b"", id="ns/a"),
        ],
    )
    shuffled = Configuration(
        routes=list(reversed(cfg.routes)), certificates=list(reversed(cfg.certificates))
    )

    ensure_deterministic_order(cfg)
    ensure_deterministic_order(shuffled)

    assert [route.id for route in cfg.routes] == ["1", "2"]
    assert [cert.id for cert in cfg.certificates] == ["ns/a", "ns/b"]
    assert cfg.dumps() == shuffled.dumps()
    assert ensure_deterministic_order(cfg).dumps() == shuffled.dumps()
