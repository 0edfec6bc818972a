"""
Segment Log Gateway - FastAPI Application
Reverse proxy that ships a Segment track event for every proxied request.
"""

from typing import List, Optional
from contextlib import asynccontextmanager
import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response
from pydantic_settings import BaseSettings, SettingsConfigDict

from connection_pool import KeepAlivePool
from delivery import DEFAULT_COLLECTOR_URL, DeliveryConfig, DeliveryScheduler
from upstream_client import UpstreamClient, filter_headers, RESPONSE_SKIP_HEADERS
from utils import LatencyTracker, RequestContextMiddleware, SegmentLogMiddleware, error_response

logger = structlog.get_logger()

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


class Settings(BaseSettings):
    """Application settings from environment."""
    model_config = SettingsConfigDict(env_file="config/.env", env_file_encoding="utf-8")

    gateway_host: str = "127.0.0.1"
    gateway_port: int = 8000
    gateway_log_level: str = "INFO"

    upstream_url: str = "http://127.0.0.1:9000"
    upstream_timeout: int = 60

    plugin_name: str = "segment-log"
    collector_url: str = DEFAULT_COLLECTOR_URL
    destination_write_key: str = ""
    identity_claim_key: str = "sub"
    glob_numeric_path_segments: bool = False
    socket_timeout_ms: int = 10000
    keepalive_idle_ms: int = 60000
    keepalive_pool_size: int = 30
    tls_fail_open: bool = True
    tls_verify: bool = True
    excluded_paths: List[str] = ["/health"]
    shutdown_drain_timeout: float = 5.0

    def delivery_config(self) -> DeliveryConfig:
        return DeliveryConfig(
            destination_write_key=self.destination_write_key,
            identity_claim_key=self.identity_claim_key,
            glob_numeric_path_segments=self.glob_numeric_path_segments,
            socket_timeout_ms=self.socket_timeout_ms,
            keepalive_idle_ms=self.keepalive_idle_ms,
            collector_url=self.collector_url,
            tls_fail_open=self.tls_fail_open,
            tls_verify=self.tls_verify,
        )


# Global state
settings = Settings()
upstream_client: Optional[UpstreamClient] = None
keepalive_pool: Optional[KeepAlivePool] = None
delivery_scheduler: Optional[DeliveryScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global upstream_client, keepalive_pool, delivery_scheduler

    # Startup
    logger.info("gateway_startup", version="0.1.0")

    upstream_client = UpstreamClient(settings.upstream_url, timeout=settings.upstream_timeout)

    if settings.destination_write_key:
        keepalive_pool = KeepAlivePool(max_idle_per_host=settings.keepalive_pool_size)
        delivery_scheduler = DeliveryScheduler(
            settings.delivery_config(), keepalive_pool, name=settings.plugin_name
        )
    else:
        logger.warning("segment_log_disabled", reason="missing_destination_write_key")

    logger.info("gateway_ready", segment_log=delivery_scheduler is not None)

    yield

    # Shutdown
    logger.info("gateway_shutdown")
    if delivery_scheduler:
        await delivery_scheduler.drain(timeout=settings.shutdown_drain_timeout)
    if keepalive_pool:
        await keepalive_pool.close()
    if upstream_client:
        await upstream_client.close()


# Initialize FastAPI app
app = FastAPI(
    title="Segment Log Gateway",
    description="Reverse proxy with Segment request tracking",
    version="0.1.0",
    lifespan=lifespan
)

# Segment delivery reads the module global at call time
app.add_middleware(
    SegmentLogMiddleware,
    get_scheduler=lambda: delivery_scheduler,
    excluded_paths=settings.excluded_paths,
)

# Add request context middleware
app.add_middleware(RequestContextMiddleware)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy" if upstream_client else "starting",
        "segment_log": "enabled" if delivery_scheduler else "disabled",
        "pending_deliveries": delivery_scheduler.pending if delivery_scheduler else 0,
    }


@app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(path: str, request: Request):
    """Forward the request upstream and relay the response."""
    if upstream_client is None:
        return error_response(503, "service_unavailable", "Upstream client not initialised")

    timings = request.scope.setdefault("segment_log", {})
    tracker = LatencyTracker()
    tracker.start()

    try:
        upstream = await upstream_client.forward(
            request.method,
            request.url.path,
            query=request.url.query,
            headers=request.headers.items(),
            content=await request.body(),
        )

    except httpx.TimeoutException as e:
        return error_response(504, "upstream_timeout", "Upstream did not respond in time", {"error": str(e)})

    except httpx.HTTPError as e:
        return error_response(502, "bad_gateway", "Upstream request failed", {"error": str(e)})

    finally:
        timings["proxy_latency_ms"] = tracker.elapsed_ms()

    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=filter_headers(upstream.headers.items(), RESPONSE_SKIP_HEADERS),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "segment_log_gateway:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
        log_level=settings.gateway_log_level.lower(),
        reload=False
    )
