"""
Segment Log Delivery
Deferred, fire-and-forget shipping of one track event per proxied request.

Each delivery runs as its own asyncio task after the response has been
sent. Failures are logged and dropped: no retries, at-most-once.
"""

import asyncio
import ssl
from enum import Enum
from typing import Any, Mapping, Optional, Set, Union

import httpx
import structlog
from pydantic import BaseModel, Field

from connection_pool import KeepAliveError, KeepAlivePool, PooledConnection, make_ssl_context
from endpoint import Endpoint, resolve_endpoint
from errors import (
    ConnectFailure,
    CredentialDecodeFailure,
    DeliveryError,
    KeepAliveFailure,
    MissingCredential,
    MissingIdentityClaim,
    SendFailure,
    TLSHandshakeFailure,
)
from event_transformer import LogRecord, build_event
from request_framer import InvalidHeaderValue, basic_authorization, frame_request
from token_decoder import TokenError, decode_token, strip_auth_scheme

logger = structlog.get_logger()

DEFAULT_COLLECTOR_URL = "https://api.segment.io/v1/track"


class DeliveryState(Enum):
    """Delivery task states."""
    SCHEDULED = "scheduled"
    CREDENTIAL_EXTRACTED = "credential_extracted"
    EVENT_BUILT = "event_built"
    CONNECTED = "connected"
    TLS_ESTABLISHED = "tls_established"
    SENT = "sent"
    RELEASED = "released"
    ABORTED = "aborted"


class DeliveryConfig(BaseModel):
    """Per-delivery options."""

    destination_write_key: str
    identity_claim_key: str = "sub"
    glob_numeric_path_segments: bool = False
    socket_timeout_ms: int = Field(default=10000, gt=0)
    keepalive_idle_ms: int = Field(default=60000, ge=0)
    collector_url: str = DEFAULT_COLLECTOR_URL
    # Send anyway when the TLS handshake fails (plaintext fallback)
    tls_fail_open: bool = True
    tls_verify: bool = True


class DeliveryTask:
    """One track event on its way to the collector."""

    def __init__(
        self,
        record: Union[LogRecord, Mapping[str, Any]],
        config: DeliveryConfig,
        pool: KeepAlivePool,
        ssl_context: Optional[ssl.SSLContext] = None,
        name: str = "segment-log",
    ):
        self.record = record
        self.config = config
        self.pool = pool
        self.ssl_context = ssl_context
        self.name = name
        self.state = DeliveryState.SCHEDULED
        self.error: Optional[DeliveryError] = None

    @property
    def timeout(self) -> float:
        return self.config.socket_timeout_ms / 1000

    async def run(self) -> bool:
        """Deliver the event. Returns False when the attempt was aborted."""
        try:
            await self._deliver()
        except DeliveryError as e:
            self.state = DeliveryState.ABORTED
            self.error = e
            logger.error(
                "segment_log_delivery_failed",
                plugin=self.name,
                stage=e.stage,
                error_type=type(e).__name__,
                error=str(e),
                **e.context,
            )
            return False
        return True

    def _resolve_endpoint(self) -> Endpoint:
        try:
            return resolve_endpoint(self.config.collector_url)
        except httpx.InvalidURL as e:
            raise ConnectFailure(f"invalid collector url: {e}", url=self.config.collector_url) from e

    def _extract_user_id(self, record: LogRecord) -> Any:
        authorization = record.header("authorization")
        if not authorization:
            raise MissingCredential("missing Authorization header")

        try:
            token = decode_token(strip_auth_scheme(authorization))
        except TokenError as e:
            raise CredentialDecodeFailure(
                f"failed to decode Authorization token: {e}",
                reason=type(e).__name__,
            ) from e

        key = self.config.identity_claim_key
        user_id = token.claims.get(key)
        if user_id is None or user_id is False:
            raise MissingIdentityClaim(f"claim `{key}` not found in token payload", claim=key)
        return user_id

    async def _deliver(self):
        endpoint = self._resolve_endpoint()
        record = LogRecord.coerce(self.record)

        user_id = self._extract_user_id(record)
        self.state = DeliveryState.CREDENTIAL_EXTRACTED

        event = build_event(record, user_id, self.config.glob_numeric_path_segments)
        try:
            payload = frame_request(
                "POST",
                endpoint,
                basic_authorization(self.config.destination_write_key),
                event.to_body(),
            )
        except InvalidHeaderValue as e:
            raise SendFailure(f"failed to frame request: {e}", host=endpoint.host, port=endpoint.port) from e
        self.state = DeliveryState.EVENT_BUILT

        conn = await self._connect(endpoint)
        self.state = DeliveryState.CONNECTED

        try:
            if endpoint.is_tls and not conn.secured:
                await self._handshake(conn, endpoint)
            await self._send(conn, endpoint, payload)
        except DeliveryError:
            conn.close()
            raise
        self.state = DeliveryState.SENT

        try:
            await self.pool.release(conn, self.config.keepalive_idle_ms)
        except (KeepAliveError, OSError) as e:
            conn.close()
            raise KeepAliveFailure(
                f"failed to keepalive: {e}", host=endpoint.host, port=endpoint.port
            ) from e
        self.state = DeliveryState.RELEASED

        logger.debug("segment_log_delivered", plugin=self.name, host=endpoint.host, event=event.event)

    async def _connect(self, endpoint: Endpoint) -> PooledConnection:
        if endpoint.port is None:
            raise ConnectFailure(
                f"no port known for scheme {endpoint.scheme!r}", host=endpoint.host, port=None
            )
        try:
            return await self.pool.acquire(endpoint.host, endpoint.port, self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise ConnectFailure(
                f"failed to connect: {e!r}", host=endpoint.host, port=endpoint.port
            ) from e

    async def _handshake(self, conn: PooledConnection, endpoint: Endpoint):
        if self.ssl_context is None:
            self.ssl_context = make_ssl_context(self.config.tls_verify)

        try:
            await conn.start_tls(endpoint.host, self.ssl_context, self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            failure = TLSHandshakeFailure(
                f"failed to do SSL handshake: {e!r}", host=endpoint.host, port=endpoint.port
            )
            if not self.config.tls_fail_open:
                raise failure from e
            logger.error(
                "segment_log_tls_handshake_failed",
                plugin=self.name,
                stage=failure.stage,
                error=str(failure),
                fail_open=True,
                **failure.context,
            )
            return
        self.state = DeliveryState.TLS_ESTABLISHED

    async def _send(self, conn: PooledConnection, endpoint: Endpoint, payload: bytes):
        try:
            await conn.send(payload, self.timeout)
        except (OSError, asyncio.TimeoutError, RuntimeError) as e:
            # RuntimeError: writing to a transport torn down by a failed handshake
            raise SendFailure(
                f"failed to send data: {e!r}", host=endpoint.host, port=endpoint.port
            ) from e


class DeliveryScheduler:
    """Spawns delivery tasks off the request path."""

    def __init__(
        self,
        config: DeliveryConfig,
        pool: KeepAlivePool,
        name: str = "segment-log",
    ):
        self.config = config
        self.pool = pool
        self.name = name
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = make_ssl_context(self.config.tls_verify)
        return self._ssl_context

    def schedule(self, record: Union[LogRecord, Mapping[str, Any]]) -> bool:
        """Queue one delivery on the running loop. Never raises."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            logger.error("segment_log_schedule_failed", plugin=self.name, error=str(e))
            return False

        task = DeliveryTask(record, self.config, self.pool, self._get_ssl_context(), self.name)
        handle = loop.create_task(self._run(task))
        self._tasks.add(handle)
        handle.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, task: DeliveryTask) -> bool:
        try:
            return await task.run()
        except Exception as e:
            logger.error(
                "segment_log_delivery_crashed",
                plugin=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight deliveries. Returns how many are still pending."""
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("segment_log_deliveries_abandoned", plugin=self.name, count=len(pending))
        return len(pending)
