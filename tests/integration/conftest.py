"""Integration test fixtures.

Provides shared fixtures for:
- Relay server lifecycle on an ephemeral port
- Raw WebSocket participants speaking the wire protocol
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest_asyncio
import websockets
from websockets.asyncio.client import ClientConnection

from src.relay.config import HealthConfig, RelayConfig, WebSocketConfig
from src.relay.server import RelayServer

logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def relay_server() -> AsyncIterator[RelayServer]:
    """Relay on an ephemeral port with the health endpoint disabled."""
    config = RelayConfig(
        websocket=WebSocketConfig(host="127.0.0.1", port=0),
        health=HealthConfig(enabled=False),
        graceful_shutdown_timeout_s=2,
    )
    server = RelayServer(config)
    await server.start()
    logger.info("Test relay started", extra={"port": server.port})
    try:
        yield server
    finally:
        await server.stop()


@pytest_asyncio.fixture
async def connect(
    relay_server: RelayServer,
) -> AsyncIterator[Callable[[], Awaitable[ClientConnection]]]:
    """Factory opening raw WebSocket participants; all are closed afterwards."""
    opened: list[ClientConnection] = []

    async def open_participant() -> ClientConnection:
        ws = await websockets.connect(f"ws://127.0.0.1:{relay_server.port}")
        opened.append(ws)
        return ws

    yield open_participant

    for ws in opened:
        await ws.close()
