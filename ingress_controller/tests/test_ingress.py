from __future__ import annotations

import json

import pytest
from kubernetes.client import DiscoveryV1EndpointPort, V1HTTPIngressRuleValue, V1IngressRule, V1ServicePort

from ingress_controller.src.errors import SourceError
from ingress_controller.src.ingress import (
    EndpointGroup,
    aggregate_endpoint_slices,
    backend_service_names,
    ingress_certificates,
    ingress_to_routes,
    route_name,
    tls_secret_names,
)
from ingress_controller.tests.factories import (
    PREFIX,
    make_endpoint_slice,
    make_ingress,
    make_ingress_config,
    make_path,
    make_secret,
    make_service,
    make_tls_secret,
    service_backend,
    tls_entry,
)


def test_prefix_path_routes_to_cluster_dns_without_endpoints() -> None:
    routes = ingress_to_routes(make_ingress_config())

    assert len(routes) == 1
    route = routes[0]
    assert route.from_ == "https://a.example.com"
    assert route.prefix == "/"
    assert route.to == ["http://web.default.svc.cluster.local:80"]
    assert json.loads(route.id) == {"h": "a.example.com", "n": "web", "ns": "default", "p": "/"}
    assert route.name == "default-web-a-example-com"


def test_endpoint_addresses_become_upstreams() -> None:
    ic = make_ingress_config(endpoint_slices=[make_endpoint_slice("web", ["10.0.0.2", "10.0.0.1"])])

    assert ingress_to_routes(ic)[0].to == ["http://10.0.0.1:8080", "http://10.0.0.2:8080"]


def test_endpoints_that_are_not_ready_are_skipped() -> None:
    ic = make_ingress_config(
        endpoint_slices=[
            make_endpoint_slice("web", ["10.0.0.1"]),
            make_endpoint_slice("web", ["10.0.0.9"], ready=False, name="web-xyz89"),
        ]
    )

    assert ingress_to_routes(ic)[0].to == ["http://10.0.0.1:8080"]


def test_only_unready_endpoints_fall_back_to_cluster_dns() -> None:
    ic = make_ingress_config(endpoint_slices=[make_endpoint_slice("web", ["10.0.0.1"], ready=False)])

    assert ingress_to_routes(ic)[0].to == ["http://web.default.svc.cluster.local:80"]


def test_endpoint_slices_are_merged_per_port() -> None:
    slices = [
        make_endpoint_slice("web", ["10.0.0.2", "10.0.0.1"], name="web-a"),
        make_endpoint_slice("web", ["10.0.0.1", "10.0.0.3"], name="web-b"),
        make_endpoint_slice("web", ["10.0.0.4"], port=9090, port_name="metrics", name="web-c"),
    ]
    slices[0].ports.append(DiscoveryV1EndpointPort(name="unnumbered"))

    assert aggregate_endpoint_slices(slices) == [
        EndpointGroup(name="http", port=8080, protocol="TCP", addresses=("10.0.0.1", "10.0.0.2", "10.0.0.3")),
        EndpointGroup(name="metrics", port=9090, protocol="TCP", addresses=("10.0.0.4",)),
    ]


def test_named_service_port_is_resolved() -> None:
    path = make_path()
    path.backend = service_backend("web", port_name="http")
    ingress = make_ingress(paths=[path])

    routes = ingress_to_routes(make_ingress_config(ingress))

    assert routes[0].to == ["http://web.default.svc.cluster.local:80"]


def test_unknown_named_port_is_rejected() -> None:
    path = make_path()
    path.backend = service_backend("web", port_name="grpc")

    with pytest.raises(SourceError, match="could not find port grpc on service default/web"):
        ingress_to_routes(make_ingress_config(make_ingress(paths=[path])))


def test_exact_and_prefix_paths_are_sorted() -> None:
    ingress = make_ingress(
        paths=[make_path("/b", path_type="Prefix"), make_path("/a", path_type="Exact"), make_path("/")]
    )

    routes = ingress_to_routes(make_ingress_config(ingress))

    assert [(route.path, route.prefix) for route in routes] == [("", "/"), ("/a", ""), ("", "/b")]


def test_implementation_specific_requires_regex_annotation() -> None:
    ingress = make_ingress(paths=[make_path("^/v[0-9]+/", path_type="ImplementationSpecific")])

    with pytest.raises(SourceError, match="use Exact or Prefix"):
        ingress_to_routes(make_ingress_config(ingress))

    ingress.metadata.annotations = {f"{PREFIX}/path_regex": "true"}
    assert ingress_to_routes(make_ingress_config(ingress))[0].regex == "^/v[0-9]+/"


def test_missing_host_is_rejected() -> None:
    with pytest.raises(SourceError, match="host is required"):
        ingress_to_routes(make_ingress_config(make_ingress(host=None)))


def test_missing_http_block_is_rejected() -> None:
    ingress = make_ingress(rules=[V1IngressRule(host="a.example.com")])

    with pytest.raises(SourceError, match="rules.http is required"):
        ingress_to_routes(make_ingress_config(ingress))


def test_missing_service_is_rejected() -> None:
    with pytest.raises(SourceError, match="service default/web not found"):
        ingress_to_routes(make_ingress_config(services=[]))


def test_secure_upstream_uses_https_and_sets_server_name() -> None:
    ingress = make_ingress(annotations={f"{PREFIX}/secure_upstream": "true"})
    ic = make_ingress_config(ingress, endpoint_slices=[make_endpoint_slice("web", ["10.0.0.1"])])

    route = ingress_to_routes(ic)[0]

    assert route.to == ["https://10.0.0.1:8080"]
    assert route.tls_server_name == "web.default.svc.cluster.local"


def test_service_proxy_upstream_ignores_endpoints() -> None:
    ingress = make_ingress(annotations={f"{PREFIX}/service_proxy_upstream": "true"})
    ic = make_ingress_config(ingress, endpoint_slices=[make_endpoint_slice("web", ["10.0.0.1"])])

    assert ingress_to_routes(ic)[0].to == ["http://web.default.svc.cluster.local:80"]


def test_external_name_service() -> None:
    service = make_service(
        "web", service_type="ExternalName", external_name="api.upstream.net", ports=[V1ServicePort(port=443)]
    )
    ingress = make_ingress(paths=[make_path(number=443)])

    assert ingress_to_routes(make_ingress_config(ingress, services=[service]))[0].to == [
        "http://api.upstream.net:443"
    ]


def test_http01_solver_is_public_and_ignores_annotations() -> None:
    ingress = make_ingress(
        labels={"acme.cert-manager.io/http01-solver": "true"},
        annotations={f"{PREFIX}/not_a_real_key": "x"},
    )

    route = ingress_to_routes(make_ingress_config(ingress))[0]

    assert route.allow_public_unauthenticated_access
    assert route.preserve_host_header


def test_annotation_errors_name_the_ingress() -> None:
    ingress = make_ingress(annotations={f"{PREFIX}/allow_websockets": "maybe"})

    with pytest.raises(SourceError, match="ingress default/web: annotations:"):
        ingress_to_routes(make_ingress_config(ingress))


def test_custom_route_name_annotation() -> None:
    ingress = make_ingress(annotations={f"{PREFIX}/name": "friendly"})

    assert ingress_to_routes(make_ingress_config(ingress))[0].name == "friendly"


def test_default_backend_uses_single_tls_host() -> None:
    ingress = make_ingress(
        rules=[],
        default_backend=service_backend("web"),
        tls=[tls_entry("tls", ["b.example.com"])],
    )

    routes = ingress_to_routes(make_ingress_config(ingress))

    assert [(route.from_, route.prefix) for route in routes] == [("https://b.example.com", "/")]


def test_default_backend_without_single_tls_host_is_rejected() -> None:
    ingress = make_ingress(
        rules=[],
        default_backend=service_backend("web"),
        tls=[tls_entry("tls", ["a.example.com", "b.example.com"])],
    )

    with pytest.raises(SourceError, match="defaultBackend requires exactly one TLS host"):
        ingress_to_routes(make_ingress_config(ingress))


def test_multi_host_ingress_gets_distinct_ids() -> None:
    rules = [
        V1IngressRule(host=host, http=V1HTTPIngressRuleValue(paths=[make_path()]))
        for host in ("a.example.com", "b.example.com")
    ]

    routes = ingress_to_routes(make_ingress_config(make_ingress(rules=rules)))

    assert len({route.id for route in routes}) == 2


def test_dependency_names() -> None:
    ingress = make_ingress(
        paths=[make_path(service="web"), make_path("/api", service="api")],
        default_backend=service_backend("fallback"),
        tls=[tls_entry("b", ["a.example.com"]), tls_entry("a", ["a.example.com"])],
    )

    assert backend_service_names(ingress) == ["api", "fallback", "web"]
    assert tls_secret_names(ingress) == ["a", "b"]


def test_ingress_certificates_skip_non_tls_secrets() -> None:
    ingress = make_ingress(tls=[tls_entry("tls", ["a.example.com"]), tls_entry("opaque", ["a.example.com"])])
    ic = make_ingress_config(
        ingress, secrets=[make_tls_secret("tls"), make_secret("opaque", {"tls.crt": "x"})]
    )

    certificates = ingress_certificates(ic)

    assert [cert.id for cert in certificates] == ["default/tls"]


def test_ingress_certificates_require_secret() -> None:
    ingress = make_ingress(tls=[tls_entry("tls", ["a.example.com"])])

    with pytest.raises(SourceError, match="TLS secret default/tls not found"):
        ingress_certificates(make_ingress_config(ingress))


def test_route_name_slug() -> None:
    assert route_name("default", "web", "a.example.com", "/api/v1") == "default-web-a-example-com-api-v1"
