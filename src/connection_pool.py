"""
Keep-Alive Connection Pool
Raw asyncio stream connections to the collector, parked between deliveries.
"""

import asyncio
import ssl
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

import structlog

logger = structlog.get_logger()

PoolKey = Tuple[str, int]


class KeepAliveError(Exception):
    """Connection could not be returned to the pool."""


def make_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """Client TLS context; ``verify=False`` skips certificate checks."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class PooledConnection:
    """A single socket, exclusively owned by one delivery while checked out."""

    def __init__(self, key: PoolKey, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.key = key
        self.reader = reader
        self.writer = writer
        self.secured = False
        self.reused = 0
        self.peer_closed = False
        # Collector responses are never parsed; reading them keeps the transport
        # from pausing so a close by the peer is always noticed.
        self._discarder = asyncio.ensure_future(self._discard_incoming())

    async def _discard_incoming(self):
        try:
            while await self.reader.read(65536):
                pass
        except OSError as e:
            logger.debug("keepalive_connection_read_failed", host=self.key[0], port=self.key[1], error=str(e))
        self.peer_closed = True

    @property
    def closed(self) -> bool:
        return self.peer_closed or self.writer.is_closing() or self.reader.at_eof()

    async def start_tls(self, server_hostname: str, ssl_context: ssl.SSLContext, timeout: float):
        """Upgrade the connection to TLS in place."""
        await asyncio.wait_for(
            self.writer.start_tls(ssl_context, server_hostname=server_hostname),
            timeout,
        )
        self.secured = True

    async def send(self, data: bytes, timeout: float):
        """Write all bytes, waiting at most ``timeout`` for the buffer to drain."""
        self.writer.write(data)
        await asyncio.wait_for(self.writer.drain(), timeout)

    def close(self):
        self._discarder.cancel()
        self.writer.close()


class KeepAlivePool:
    """
    Idle connections keyed by (host, port).

    Safe for concurrent acquire/release from many tasks on one event loop.
    """

    def __init__(self, max_idle_per_host: int = 30, clock: Callable[[], float] = time.monotonic):
        self.max_idle_per_host = max_idle_per_host
        self._clock = clock
        self._idle: Dict[PoolKey, Deque[Tuple[PooledConnection, Optional[float]]]] = {}
        self._lock = asyncio.Lock()

    @property
    def idle_count(self) -> int:
        return sum(len(queue) for queue in self._idle.values())

    async def _open(self, host: str, port: int, timeout: float) -> PooledConnection:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        return PooledConnection((host, port), reader, writer)

    async def _take_idle(self, key: PoolKey) -> Optional[PooledConnection]:
        async with self._lock:
            queue = self._idle.get(key)
            now = self._clock()
            while queue:
                conn, deadline = queue.pop()
                if conn.closed or (deadline is not None and now >= deadline):
                    conn.close()
                    continue
                return conn
        return None

    async def acquire(self, host: str, port: int, timeout: float) -> PooledConnection:
        """
        Return an idle connection to host:port, or open a new one.

        Raises:
            OSError: connect failed
            asyncio.TimeoutError: connect exceeded ``timeout`` seconds
        """
        conn = await self._take_idle((host, port))
        if conn is not None:
            conn.reused += 1
            logger.debug("keepalive_connection_reused", host=host, port=port, reused=conn.reused)
            return conn

        return await self._open(host, port, timeout)

    async def release(self, conn: PooledConnection, idle_timeout_ms: int):
        """
        Park a connection for reuse. ``idle_timeout_ms=0`` keeps it until closed.

        Raises:
            KeepAliveError: the connection is no longer usable
        """
        if conn.closed:
            raise KeepAliveError("connection closed by peer")

        deadline = None
        if idle_timeout_ms > 0:
            deadline = self._clock() + idle_timeout_ms / 1000

        async with self._lock:
            queue = self._idle.setdefault(conn.key, deque())
            queue.append((conn, deadline))
            while len(queue) > self.max_idle_per_host:
                oldest, _ = queue.popleft()
                oldest.close()

    async def close(self):
        """Close every idle connection."""
        async with self._lock:
            writers = []
            for queue in self._idle.values():
                for conn, _ in queue:
                    conn.close()
                    writers.append(conn.writer)
            self._idle.clear()

        # Peers may already have reset the sockets
        await asyncio.gather(*(writer.wait_closed() for writer in writers), return_exceptions=True)
