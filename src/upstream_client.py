"""
Upstream Client
Async HTTP client that forwards proxied requests to the upstream service.
"""

from typing import Dict, Iterable, Optional, Tuple

import httpx
import structlog

logger = structlog.get_logger()

# Hop-by-hop headers, plus ones httpx recomputes for the forwarded body
REQUEST_SKIP_HEADERS = frozenset({
    "host", "connection", "keep-alive", "proxy-connection", "te", "trailer",
    "transfer-encoding", "upgrade", "content-length",
})
RESPONSE_SKIP_HEADERS = frozenset({
    "connection", "keep-alive", "transfer-encoding", "content-length", "content-encoding",
})


def filter_headers(headers: Iterable[Tuple[str, str]], skip: frozenset) -> Dict[str, str]:
    return {name: value for name, value in headers if name.lower() not in skip}


class UpstreamClient:
    """Async HTTP client for the proxied upstream."""

    def __init__(self, base_url: str, timeout: int = 60):
        self.base_url = base_url.rstrip('/')
        self.timeout = httpx.Timeout(connect=10.0, read=float(timeout), write=10.0, pool=5.0)

        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100)
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def forward(
        self,
        method: str,
        path: str,
        query: str = "",
        headers: Optional[Iterable[Tuple[str, str]]] = None,
        content: bytes = b"",
    ) -> httpx.Response:
        """
        Forward one request upstream. Errors propagate to the caller.

        Raises:
            httpx.TimeoutException: upstream too slow
            httpx.HTTPError: upstream unreachable or protocol failure
        """
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        try:
            return await self.client.request(
                method,
                url,
                headers=filter_headers(headers or [], REQUEST_SKIP_HEADERS),
                content=content,
            )
        except httpx.HTTPError as e:
            logger.error("upstream_request_failed", method=method, path=path, error=str(e))
            raise
