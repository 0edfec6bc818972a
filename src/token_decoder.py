"""
Compact Token Decoder
Structural decoding of three-part dot-separated tokens (JWT compact form).

Signatures are NOT verified. Tokens reaching the gateway are assumed to have
been authenticated upstream; this module only extracts header and claims.
"""

import base64
import binascii
import re
from typing import Any, Dict

import orjson
from pydantic import BaseModel, ConfigDict

_AUTH_SCHEME = re.compile(r"^[A-Za-z0-9]+ ")
_B64URL_ALPHABET = re.compile(r"^[A-Za-z0-9_-]*$")


class TokenError(ValueError):
    """Base class for token decoding failures."""


class MalformedToken(TokenError):
    pass


class EncodingError(TokenError):
    pass


class ClaimsParseError(TokenError):
    pass


class DecodedToken(BaseModel):
    """Decoded header and claims; the signature is kept as received."""

    model_config = ConfigDict(frozen=True)

    header: Dict[str, Any]
    claims: Dict[str, Any]
    signature: str


def strip_auth_scheme(value: str) -> str:
    """Remove a leading scheme word such as ``Bearer `` from a header value."""
    return _AUTH_SCHEME.sub("", value, count=1)


def b64url_decode(segment: str) -> bytes:
    """Decode base64url, tolerating missing padding."""
    unpadded = segment.rstrip("=")
    if not _B64URL_ALPHABET.match(unpadded):
        raise EncodingError("segment contains characters outside the base64url alphabet")

    try:
        return base64.urlsafe_b64decode(unpadded + "=" * (-len(unpadded) % 4))
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"invalid base64url segment: {e}") from e


def _parse_object(raw: bytes, part: str) -> Dict[str, Any]:
    try:
        value = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ClaimsParseError(f"token {part} is not valid JSON: {e}") from e

    if not isinstance(value, dict):
        raise ClaimsParseError(f"token {part} is not a JSON object")
    return value


def decode_token(raw: str) -> DecodedToken:
    """
    Decode a compact token into header and claims.

    Args:
        raw: Token string with any auth scheme already stripped

    Returns:
        DecodedToken with header, claims and the untouched signature

    Raises:
        MalformedToken: token does not have exactly three segments
        EncodingError: header or payload is not valid base64url
        ClaimsParseError: header or payload is not a JSON object
    """
    segments = raw.split(".")
    if len(segments) != 3:
        raise MalformedToken(f"expected 3 token segments, got {len(segments)}")

    header_segment, payload_segment, signature = segments
    header = _parse_object(b64url_decode(header_segment), "header")
    claims = _parse_object(b64url_decode(payload_segment), "payload")

    return DecodedToken(header=header, claims=claims, signature=signature)
