"""
HTTP/1.1 Request Framer
Renders a track request as raw bytes ready to be written to a socket.
"""

import base64
import re
from typing import Union

from endpoint import Endpoint

_FORBIDDEN_HEADER_CHARS = re.compile(r"[\r\n\x00]")
_METHOD_TOKEN = re.compile(r"^[A-Za-z]+$")


class InvalidHeaderValue(ValueError):
    """A value would break the request framing."""


def basic_authorization(write_key: str) -> str:
    """Basic auth with the write key as username and an empty password."""
    token = base64.b64encode(f"{write_key}:".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _check_header_value(name: str, value: str) -> str:
    if _FORBIDDEN_HEADER_CHARS.search(value):
        raise InvalidHeaderValue(f"{name} contains a control character")
    return value


def frame_request(
    method: str,
    endpoint: Endpoint,
    authorization: str,
    body: Union[str, bytes],
) -> bytes:
    """
    Build the request bytes.

    Headers are emitted in a fixed order: Host, Connection, Content-Type,
    Content-Length, Authorization. Content-Length counts encoded body bytes.
    """
    if not _METHOD_TOKEN.match(method):
        raise InvalidHeaderValue(f"invalid method token {method!r}")

    path = _check_header_value("path", endpoint.path)
    if any(ch.isspace() for ch in path):
        raise InvalidHeaderValue("path contains whitespace")

    host = _check_header_value("Host", endpoint.authority)
    authorization = _check_header_value("Authorization", authorization)

    payload = body.encode("utf-8") if isinstance(body, str) else body

    head = (
        f"{method.upper()} {path} HTTP/1.1\r\n"
        f"Host: {host}\r\n"
        "Connection: Keep-Alive\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n"
        f"Authorization: {authorization}\r\n"
        "\r\n"
    )

    try:
        return head.encode("latin-1") + payload
    except UnicodeEncodeError as e:
        raise InvalidHeaderValue(f"header is not ISO-8859-1 encodable: {e}") from e
