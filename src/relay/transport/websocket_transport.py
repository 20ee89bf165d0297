"""WebSocket transport implementation.

Provides WebSocket-based participant connections for the relay. Each
connection drains a bounded outbound queue from its own writer task, so a
slow participant never stalls delivery to the rest of its room.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.relay.metrics import get_metrics_collector
from src.relay.transport.base import ParticipantConnection, Transport

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketConnection(ParticipantConnection):
    """WebSocket-based participant connection.

    Implements the ParticipantConnection interface, encoding outbound
    envelopes as text frames and disconnecting the participant when its
    send buffer overflows.
    """

    def __init__(
        self, websocket: ServerConnection, connection_id: str, send_queue_size: int = 256
    ) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
            send_queue_size: Maximum number of envelopes buffered for sending
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._closing = False
        self._outbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=send_queue_size)
        self._writer_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        """Get unique connection identifier."""
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still active."""
        return not self._closing and self._websocket.state == State.OPEN

    def start(self) -> None:
        """Start the writer task draining the outbound queue."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer_loop())

    def send(self, data: bytes) -> bool:
        """Queue an encoded envelope without blocking.

        Returns:
            True if queued, False if closed or the buffer overflowed
        """
        if not self.is_connected:
            return False

        try:
            self._outbound.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning(
                "Send buffer overflow, disconnecting participant",
                extra={"connection_id": self._connection_id, "queued": self._outbound.qsize()},
            )
            get_metrics_collector().record_send_overflow()
            self._begin_close(CLOSE_POLICY_VIOLATION, "send buffer overflow")
            return False
        return True

    async def receive(self) -> AsyncIterator[bytes | str]:
        """Receive raw frames until the participant disconnects.

        Yields:
            Raw frame payload
        """
        try:
            async for raw_message in self._websocket:
                yield raw_message
        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by participant",
                extra={"connection_id": self._connection_id},
            )
        finally:
            self._closing = True

    async def close(self, reason: str = "closed") -> None:
        """Close the connection.

        Pending outbound envelopes are discarded.
        """
        close_task = self._begin_close(CLOSE_NORMAL, reason)
        await asyncio.shield(close_task)

    def _begin_close(self, code: int, reason: str) -> asyncio.Task[None]:
        """Start closing exactly once; later callers share the same task."""
        self._closing = True
        if self._close_task is None:
            self._close_task = asyncio.get_running_loop().create_task(
                self._shutdown(code, reason)
            )
        return self._close_task

    async def _shutdown(self, code: int, reason: str) -> None:
        """Stop the writer and close the socket."""
        logger.info(
            "Closing WebSocket connection",
            extra={"connection_id": self._connection_id, "reason": reason},
        )

        writer, self._writer_task = self._writer_task, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

        while not self._outbound.empty():
            try:
                self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break

        try:
            await self._websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )

    async def _writer_loop(self) -> None:
        """Continuously send queued envelopes to the participant."""
        try:
            while True:
                data = await self._outbound.get()
                await self._websocket.send(data.decode("utf-8"))
        except websockets.exceptions.ConnectionClosed:
            self._closing = True
        except asyncio.CancelledError:
            # Clean shutdown
            pass


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages WebSocket server lifecycle and creates WebSocketConnection
    instances for incoming participants.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_connections: int = 1000,
        send_queue_size: int = 256,
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            send_queue_size: Outbound buffer size per connection
            max_message_bytes: Frame size limit enforced by the socket layer
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._send_queue_size = send_queue_size
        self._max_message_bytes = max_message_bytes
        self._server: Any = None  # websockets.Server type
        self._running = False
        self._connections: dict[str, WebSocketConnection] = {}
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def port(self) -> int:
        """Bound port (resolved after start when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    @property
    def connection_count(self) -> int:
        """Number of live connections."""
        return len(self._connections)

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server and close every live connection."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        for connection in list(self._connections.values()):
            await connection.close(reason="server shutdown")

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> ParticipantConnection:
        """Block until a new participant connects.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._connection_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        if len(self._connections) >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting participant",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="server at capacity")
            return

        connection_id = f"ws-{uuid.uuid4().hex[:12]}"

        logger.info(
            "New WebSocket connection",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

        connection = WebSocketConnection(websocket, connection_id, self._send_queue_size)
        connection.start()
        self._connections[connection_id] = connection

        await self._connection_queue.put(connection)

        # Keep connection alive until closed
        try:
            await websocket.wait_closed()
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            self._connections.pop(connection_id, None)
            await connection.close(reason="connection closed")
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})
