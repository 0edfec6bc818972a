"""
Collector endpoint resolution.
"""

from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

DEFAULT_PORTS = {"http": 80, "https": 443}


class Endpoint(BaseModel):
    """Resolved delivery destination."""

    model_config = ConfigDict(frozen=True)

    scheme: str
    host: str
    port: Optional[int]
    path: str = "/"

    @property
    def is_tls(self) -> bool:
        return self.scheme == "https"

    @property
    def authority(self) -> str:
        """Host header value; the port is only included when it is not the scheme default."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port is None or self.port == DEFAULT_PORTS.get(self.scheme):
            return host
        return f"{host}:{self.port}"


def resolve_endpoint(url: str) -> Endpoint:
    """
    Parse a fully-qualified URL, applying default ports and path.

    Schemes other than http/https get no default port; the connect step
    reports that as a failure.
    """
    parsed = httpx.URL(url)

    # httpx normalises default ports away, so an explicit :443 also lands here
    port = parsed.port
    if port is None:
        port = DEFAULT_PORTS.get(parsed.scheme)

    path = parsed.raw_path.decode("ascii") or "/"

    return Endpoint(scheme=parsed.scheme, host=parsed.host, port=port, path=path)
