import pytest
from pydantic import ValidationError

from endpoint import Endpoint, resolve_endpoint


def test_https_gets_default_port_and_keeps_path():
    endpoint = resolve_endpoint("https://api.example.com/track")
    assert endpoint == Endpoint(scheme="https", host="api.example.com", port=443, path="/track")
    assert endpoint.is_tls


def test_http_without_path_defaults_to_root():
    endpoint = resolve_endpoint("http://x.io")
    assert endpoint == Endpoint(scheme="http", host="x.io", port=80, path="/")
    assert not endpoint.is_tls


def test_explicit_port_is_kept():
    endpoint = resolve_endpoint("http://collector.internal:8088/v1/track")
    assert endpoint.port == 8088
    assert endpoint.path == "/v1/track"


def test_explicit_default_port_resolves_to_same_value():
    assert resolve_endpoint("https://api.segment.io:443/v1/track").port == 443


def test_unknown_scheme_leaves_port_unset():
    endpoint = resolve_endpoint("ftp://files.example.com/upload")
    assert endpoint.port is None


def test_endpoint_is_immutable():
    endpoint = resolve_endpoint("https://api.segment.io/v1/track")
    with pytest.raises(ValidationError):
        endpoint.port = 8443


def test_authority_includes_only_non_default_ports():
    assert resolve_endpoint("https://api.segment.io/v1/track").authority == "api.segment.io"
    assert resolve_endpoint("http://collector.local:8080/v1/track").authority == "collector.local:8080"
    assert resolve_endpoint("http://[::1]:9000/track").authority == "[::1]:9000"
