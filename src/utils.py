"""
Segment Log Gateway Utilities
Shared utilities for logging, request tracking, and error handling.
"""

import time
import uuid
from typing import Any, Callable, Dict, Iterable, Optional

import orjson
import structlog
from fastapi.responses import JSONResponse

from log_serializer import serialize_request

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(serializer=orjson.dumps)
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.BytesLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def generate_request_id() -> str:
    """Generate unique request ID."""
    return str(uuid.uuid4())


class RequestContextMiddleware:
    """Middleware to inject request_id into all logs."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            request_id = generate_request_id()
            scope["request_id"] = request_id
            structlog.contextvars.clear_contextvars()
            structlog.contextvars.bind_contextvars(request_id=request_id)

        await self.app(scope, receive, send)


class SegmentLogMiddleware:
    """
    Schedule a Segment delivery for every completed HTTP request.

    The record is built after the downstream app has finished sending the
    response, so delivery never delays the client. Routes report upstream
    time by setting ``scope["segment_log"]["proxy_latency_ms"]``.
    """

    def __init__(self, app, get_scheduler: Callable[[], Any], excluded_paths: Iterable[str] = ()):
        self.app = app
        self.get_scheduler = get_scheduler
        self.excluded_paths = frozenset(excluded_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["path"] in self.excluded_paths:
            await self.app(scope, receive, send)
            return

        tracker = LatencyTracker()
        tracker.start()
        started_at_ms = int(time.time() * 1000)
        timings: Dict[str, float] = scope.setdefault("segment_log", {})
        response_status = {"code": None}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                response_status["code"] = message["status"]
            await send(message)

        await self.app(scope, receive, send_wrapper)

        scheduler = self.get_scheduler()
        if scheduler is None or response_status["code"] is None:
            return

        record = serialize_request(
            scope,
            status=response_status["code"],
            started_at_ms=started_at_ms,
            request_ms=tracker.elapsed_ms(),
            proxy_ms=timings.get("proxy_latency_ms"),
        )
        if not scheduler.schedule(record):
            logger.error("segment_log_schedule_rejected", path=scope["path"])


def error_response(
    status_code: int,
    error_type: str,
    message: str,
    details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Build standardized error response."""
    content = {
        "error": {
            "type": error_type,
            "message": message,
        }
    }
    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content
    )


class LatencyTracker:
    """Track request latency."""

    def __init__(self):
        self.start_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.perf_counter()

    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds."""
        if self.start_time is None:
            return 0.0
        return (time.perf_counter() - self.start_time) * 1000
