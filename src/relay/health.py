"""Health check endpoints for the relay.

Provides HTTP health check endpoints for load balancers, monitoring systems,
and orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe),
plus the Prometheus metrics endpoint.
"""

import logging
import time
from typing import Any

from aiohttp import web

from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.roster import Roster
from src.relay.transport.base import Transport

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the relay.

    Provides /health endpoint that checks:
    - Transport is accepting connections
    - Roster occupancy
    - Service uptime
    """

    def __init__(
        self,
        roster: Roster | None = None,
        transport: Transport | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            roster: Relay roster (optional)
            transport: Participant transport (optional)
            metrics: Metrics collector (global singleton if omitted)
        """
        self.roster = roster
        self.transport = transport
        self.start_time = time.time()
        self.metrics_collector = metrics or get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Relay is accepting connections
            503 Service Unavailable: Transport is down

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "transport": bool,
            "rooms": int,
            "participants": int
        }
        """
        transport_ok = self.transport is not None and self.transport.is_running
        status_code = 200 if transport_ok else 503

        response_data: dict[str, Any] = {
            "status": "healthy" if transport_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": transport_ok,
            "rooms": self.roster.room_count if self.roster is not None else 0,
            "participants": self.roster.participant_count if self.roster is not None else 0,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=status_code)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint.

        The relay has no warm-up phase, so readiness equals health.
        """
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the transport is down.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
        """
        try:
            metrics_text = self.metrics_collector.export_prometheus()

            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                status=200,
            )

        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary in JSON."""
        try:
            summary = self.metrics_collector.get_summary()

            return web.json_response(
                {
                    "status": "ok",
                    "uptime_seconds": time.time() - self.start_time,
                    "rooms": self.roster.rooms() if self.roster is not None else [],
                    "metrics": summary,
                },
                status=200,
            )

        except Exception as e:
            logger.error(
                "Failed to generate metrics summary", extra={"error": str(e)}, exc_info=True
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)


def setup_health_routes(
    app: web.Application,
    roster: Roster | None = None,
    transport: Transport | None = None,
    metrics: MetricsCollector | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        roster: Relay roster (optional)
        transport: Participant transport (optional)
        metrics: Metrics collector (optional)
    """
    handler = HealthCheckHandler(roster=roster, transport=transport, metrics=metrics)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info(
        "Health check endpoints configured: "
        "/health, /readiness, /liveness, /metrics, /metrics/summary"
    )
