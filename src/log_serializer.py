"""
Request log serializer.
Builds a LogRecord from an ASGI scope once the response has been sent.
"""

from typing import Any, Dict, Optional, Union
from urllib.parse import unquote_plus

from event_transformer import LogRecord


def parse_querystring(raw: str) -> Dict[str, Any]:
    """
    Decode a query string the way the log record expects it.

    Repeated keys collect into a list, keys without ``=`` map to True.
    """
    args: Dict[str, Any] = {}
    for part in raw.split("&"):
        if not part:
            continue
        value: Union[str, bool] = True
        name = part
        if "=" in part:
            name, raw_value = part.split("=", 1)
            value = unquote_plus(raw_value)
        name = unquote_plus(name)

        if name not in args:
            args[name] = value
        elif isinstance(args[name], list):
            args[name].append(value)
        else:
            args[name] = [args[name], value]
    return args


def _headers(scope: Dict[str, Any]) -> Dict[str, Any]:
    headers: Dict[str, Any] = {}
    for raw_name, raw_value in scope.get("headers", []):
        name = raw_name.decode("latin-1").lower()
        value = raw_value.decode("latin-1")
        if name not in headers:
            headers[name] = value
        elif isinstance(headers[name], list):
            headers[name].append(value)
        else:
            headers[name] = [headers[name], value]
    return headers


def _full_url(scope: Dict[str, Any], headers: Dict[str, Any], query: str) -> str:
    scheme = scope.get("scheme", "http")
    host = headers.get("host")
    if isinstance(host, list):
        host = host[0]
    if not host:
        server = scope.get("server")
        host = f"{server[0]}:{server[1]}" if server else "localhost"
    url = f"{scheme}://{host}{scope.get('root_path', '')}{scope['path']}"
    return f"{url}?{query}" if query else url


def serialize_request(
    scope: Dict[str, Any],
    status: int,
    started_at_ms: int,
    request_ms: float,
    proxy_ms: Optional[float] = None,
) -> LogRecord:
    """
    Args:
        scope: ASGI HTTP scope
        status: Response status sent to the client
        started_at_ms: Request start, epoch milliseconds
        request_ms: Total time spent handling the request
        proxy_ms: Time spent waiting on the upstream, if it was called
    """
    query = scope.get("query_string", b"").decode("latin-1")
    headers = _headers(scope)
    client = scope.get("client")

    latencies: Dict[str, Optional[int]] = {"request": int(round(request_ms))}
    if proxy_ms is not None:
        latencies["proxy"] = int(round(proxy_ms))
        latencies["kong"] = max(0, int(round(request_ms - proxy_ms)))
    else:
        latencies["kong"] = latencies["request"]

    return LogRecord.model_validate(
        {
            "request": {
                "method": scope["method"],
                "uri": scope["path"],
                "request_uri": _full_url(scope, headers, query),
                "querystring": parse_querystring(query),
                "headers": headers,
            },
            "response": {"status": status},
            "latencies": latencies,
            "client_ip": client[0] if client else None,
            "started_at": started_at_ms,
        }
    )
