from log_serializer import parse_querystring, serialize_request


def _scope(**overrides):
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "https",
        "path": "/users/42",
        "root_path": "",
        "query_string": b"page=2&tag=a&tag=b&debug&q=hello+world",
        "headers": [
            (b"host", b"gateway.example.com"),
            (b"Authorization", b"Bearer abc.def.ghi"),
            (b"user-agent", b"curl/8.0"),
        ],
        "client": ("203.0.113.5", 51234),
        "server": ("10.0.0.1", 8000),
    }
    scope.update(overrides)
    return scope


def test_parse_querystring_shapes():
    assert parse_querystring("page=2&tag=a&tag=b&debug&empty=&q=hello+world") == {
        "page": "2",
        "tag": ["a", "b"],
        "debug": True,
        "empty": "",
        "q": "hello world",
    }
    assert parse_querystring("") == {}


def test_serialize_request_builds_log_record():
    record = serialize_request(_scope(), status=201, started_at_ms=1437643103123, request_ms=20.4, proxy_ms=15.2)

    assert record.request.method == "POST"
    assert record.request.uri == "/users/42"
    assert record.request.request_uri == (
        "https://gateway.example.com/users/42?page=2&tag=a&tag=b&debug&q=hello+world"
    )
    assert record.request.querystring["tag"] == ["a", "b"]
    assert record.header("authorization") == "Bearer abc.def.ghi"
    assert record.response.status == 201
    assert record.client_ip == "203.0.113.5"
    assert record.started_at == 1437643103123
    assert (record.latencies.proxy, record.latencies.kong, record.latencies.request) == (15, 5, 20)


def test_without_upstream_the_gateway_owns_all_latency():
    scope = _scope(query_string=b"", headers=[])
    record = serialize_request(scope, status=404, started_at_ms=0, request_ms=3.0)

    assert record.latencies.proxy is None
    assert record.latencies.kong == 3
    assert record.request.request_uri == "https://10.0.0.1:8000/users/42"
