import base64

import orjson
import pytest


def _segment(value):
    return base64.urlsafe_b64encode(orjson.dumps(value)).rstrip(b"=").decode("ascii")


@pytest.fixture
def make_token():
    def factory(claims, header=None, signature="c2lnbmF0dXJl"):
        header = header or {"alg": "HS256", "typ": "JWT"}
        return f"{_segment(header)}.{_segment(claims)}.{signature}"

    return factory


@pytest.fixture
def make_record(make_token):
    def factory(user_id="user-1", uri="/users/42/orders", authorization=None, **overrides):
        headers = {"user-agent": "pytest-agent"}
        if authorization is None:
            authorization = f"Bearer {make_token({'sub': user_id})}"
        if authorization is not False:
            headers["authorization"] = authorization

        record = {
            "request": {
                "method": "GET",
                "uri": uri,
                "request_uri": f"http://gateway.local:8000{uri}?page=2",
                "querystring": {"page": "2"},
                "headers": headers,
            },
            "response": {"status": 200},
            "latencies": {"proxy": 12, "kong": 3, "request": 15},
            "client_ip": "10.0.0.7",
            "started_at": 1437643103123,
        }
        record.update(overrides)
        return record

    return factory
