from __future__ import annotations

import json

import pytest

from ingress_controller.src.errors import DuplicateRouteError, ReconcileError
from ingress_controller.src.routes import HTTP_ROUTE_KIND, Route, RouteID, RouteTable, sort_routes


def make_route(name: str, namespace: str = "default", host: str = "a.example.com", path: str = "/") -> Route:
    return Route(
        id=RouteID(name=name, namespace=namespace, host=host, path=path).encode(),
        name=f"{namespace}-{name}",
        from_=f"https://{host}",
        to=["http://web.default.svc.cluster.local:80"],
        prefix=path,
    )


# ---------------------------------------------------------------------------
# Route serialisation
# ---------------------------------------------------------------------------


def test_to_dict_omits_unset_fields_and_renames_from() -> None:
    route = Route(id="x", from_="https://a.example.com", to=["http://svc:80"], allow_websockets=True)

    assert route.to_dict() == {
        "id": "x",
        "from": "https://a.example.com",
        "to": ["http://svc:80"],
        "allow_websockets": True,
    }


def test_from_dict_rejects_unknown_attribute() -> None:
    with pytest.raises(ValueError, match="unknown route attribute"):
        Route.from_dict({"from": "https://a.example.com", "bogus": 1})


def test_clone_is_deep() -> None:
    route = Route(set_request_headers={"X-A": "1"})

    clone = route.clone()
    clone.set_request_headers["X-B"] = "2"

    assert route.set_request_headers == {"X-A": "1"}


# ---------------------------------------------------------------------------
# Route IDs
# ---------------------------------------------------------------------------


def test_route_id_encoding_is_stable_json() -> None:
    encoded = RouteID(name="web", namespace="default", host="a.example.com", path="/api").encode()

    assert encoded == '{"h":"a.example.com","n":"web","ns":"default","p":"/api"}'
    assert json.loads(RouteID(name="web", namespace="ns", kind=HTTP_ROUTE_KIND).encode())["k"] == "HTTPRoute"


@pytest.mark.parametrize("text", ["", "not-json", "[]", '{"n":""}', '{"n":"web","p":3}'])
def test_route_id_decode_rejects_malformed(text: str) -> None:
    with pytest.raises(ValueError):
        RouteID.decode(text)


def test_route_id_owned_by_respects_kind() -> None:
    ingress_id = RouteID(name="web", namespace="default", path="/")
    gateway_id = RouteID(name="web", namespace="default", path="/", kind=HTTP_ROUTE_KIND)

    assert ingress_id.owned_by("web", "default")
    assert not gateway_id.owned_by("web", "default")
    assert gateway_id.owned_by("web", "default", HTTP_ROUTE_KIND)


# ---------------------------------------------------------------------------
# RouteTable
# ---------------------------------------------------------------------------


def test_from_routes_rejects_duplicate_ids() -> None:
    with pytest.raises(DuplicateRouteError, match="duplicate route"):
        RouteTable.from_routes([make_route("web"), make_route("web")])


def test_from_routes_rejects_undecodable_id() -> None:
    with pytest.raises(ReconcileError):
        RouteTable.from_routes([Route(id="garbage", from_="https://a.example.com")])


def test_same_path_on_different_hosts_does_not_collide() -> None:
    table = RouteTable.from_routes(
        [make_route("web", host="a.example.com"), make_route("web", host="b.example.com")]
    )

    assert len(table) == 2


def test_merge_overwrites_by_id() -> None:
    table = RouteTable.from_routes([make_route("web")])
    replacement = make_route("web")
    replacement.to = ["http://other:80"]

    table.merge(RouteTable.from_routes([replacement]))

    assert [route.to for route in table.to_routes()] == [["http://other:80"]]


def test_remove_owner_drops_every_path() -> None:
    table = RouteTable.from_routes(
        [make_route("web", path="/"), make_route("web", path="/api"), make_route("api")]
    )

    removed = table.remove_owner("web", "default")

    assert removed == 2
    assert [route.name for route in table.to_routes()] == ["default-api"]


def test_remove_kind_only_touches_that_kind() -> None:
    gateway_route = Route(
        id=RouteID(name="web", namespace="default", kind=HTTP_ROUTE_KIND).encode(), from_="https://a"
    )
    table = RouteTable.from_routes([make_route("web"), gateway_route])

    assert table.remove_kind(HTTP_ROUTE_KIND) == 1
    assert len(table) == 1
    assert RouteID(name="web", namespace="default", host="a.example.com", path="/") in table


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def test_sort_routes_is_lexicographic_on_path_then_prefix() -> None:
    routes = [
        Route(id="3", prefix="/b"),
        Route(id="1", path="/a/b"),
        Route(id="2", prefix="/"),
        Route(id="4", path="/a"),
    ]

    assert [route.match_key for route in sort_routes(routes)] == ["/", "/a", "/a/b", "/b"]


def test_sort_routes_breaks_ties_by_id() -> None:
    routes = [Route(id="b", prefix="/"), Route(id="a", prefix="/")]

    assert [route.id for route in sort_routes(routes)] == ["a", "b"]
