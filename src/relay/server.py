"""Relay server with WebSocket transport.

Main server implementation that:
1. Starts the WebSocket transport
2. Provides HTTP health check and metrics endpoints
3. Accepts participant connections
4. Runs one relay worker per connection until it closes
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from src.common.logging import setup_logging
from src.relay.config import RelayConfig
from src.relay.engine import RelayEngine
from src.relay.health import setup_health_routes
from src.relay.protocol import MessageCodec
from src.relay.roster import Roster
from src.relay.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class RelayServer:
    """Owns the roster, engine, transport and health endpoint of one relay.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: RelayConfig) -> None:
        """Initialize relay server.

        Args:
            config: Relay configuration
        """
        self.config = config
        self.roster = Roster()
        self.engine = RelayEngine(
            self.roster, MessageCodec(max_envelope_bytes=config.protocol.max_envelope_bytes)
        )

        ws_config = config.websocket
        self.transport = WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            max_connections=ws_config.max_connections,
            send_queue_size=ws_config.send_queue_size,
            max_message_bytes=ws_config.max_message_bytes,
        )

        self._health_runner: AppRunner | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._connection_tasks: set[asyncio.Task[None]] = set()

    @property
    def port(self) -> int:
        """Bound WebSocket port."""
        return self.transport.port

    async def start(self) -> None:
        """Start the transport, the health server and the accept loop."""
        await self.transport.start()

        if self.config.health.enabled:
            health_app = Application()
            setup_health_routes(health_app, self.roster, self.transport)

            self._health_runner = AppRunner(health_app)
            await self._health_runner.setup()
            site = TCPSite(self._health_runner, self.config.health.host, self.config.health.port)
            await site.start()
            logger.info(
                "Health check server started",
                extra={"host": self.config.health.host, "port": self.config.health.port},
            )

        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info("Relay server ready", extra={"port": self.port})

    async def wait_closed(self) -> None:
        """Block until the accept loop ends."""
        if self._accept_task is not None:
            await self._accept_task

    async def stop(self) -> None:
        """Stop accepting, close every connection and wait for the workers."""
        logger.info("Shutting down relay server")

        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        await self.transport.stop()
        logger.info("WebSocket transport stopped")

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        if self._connection_tasks:
            logger.info(
                "Waiting for connection workers to finish",
                extra={"count": len(self._connection_tasks)},
            )
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._connection_tasks, return_exceptions=True),
                    timeout=self.config.graceful_shutdown_timeout_s,
                )
            except TimeoutError:
                logger.warning("Connection workers did not finish before shutdown timeout")
                for task in self._connection_tasks:
                    task.cancel()

        logger.info("Relay server stopped")

    async def _accept_loop(self) -> None:
        while True:
            connection = await self.transport.accept_connection()
            task = asyncio.create_task(self.engine.serve(connection))
            self._connection_tasks.add(task)
            task.add_done_callback(self._connection_tasks.discard)


async def start_server(config_path: Path | None = None) -> None:
    """Start the relay server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults are used if missing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    setup_logging(config.log_level)
    logger.info(
        "Loaded configuration",
        extra={"config_path": str(config_path) if config_path else None},
    )

    server = RelayServer(config)
    await server.start()

    try:
        await server.wait_closed()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Room signaling relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
