"""Simple HTTP health server for container health checks."""

import asyncio
import json
from functools import partial
from typing import Callable, Optional

import structlog
from aiohttp import web

logger = structlog.get_logger()

# Default port for health server
HEALTH_PORT = 8080


class HealthServer:
    """Lightweight HTTP server for health checks.

    Reports ``degraded`` when the oldest pending job has waited longer than
    the lag SLA, so orchestrators can alert on a stalled queue.
    """

    def __init__(
        self,
        status_callback: Optional[Callable[[], dict]] = None,
        lag_callback: Optional[Callable[[], float]] = None,
        lag_sla_seconds: float = 900,
        port: int = HEALTH_PORT,
    ):
        self.status_callback = status_callback
        self.lag_callback = lag_callback
        self.lag_sla_seconds = lag_sla_seconds
        self.port = port
        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.runner = None
        self.running = False

    def build_status(self) -> dict:
        status = {"status": "ok"}

        if self.lag_callback:
            try:
                lag = self.lag_callback()
                status["queue_lag_seconds"] = round(lag, 1)
                if lag > self.lag_sla_seconds:
                    status["status"] = "degraded"
            except Exception as e:
                logger.warning("Failed to get queue lag", error=str(e))
                status["status"] = "degraded"

        if self.status_callback:
            try:
                status["details"] = self.status_callback()
            except Exception as e:
                logger.warning("Failed to get status details", error=str(e))
        return status

    async def health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests."""
        status = self.build_status()
        http_status = 200 if status["status"] == "ok" else 503
        return web.json_response(status, status=http_status, dumps=partial(json.dumps, default=str))

    async def run(self):
        """Start the health server."""
        self.running = True
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "0.0.0.0", self.port)
        await site.start()
        logger.info("Health server started", port=self.port)

        # Keep running until stopped
        while self.running:
            await asyncio.sleep(1)

    async def stop(self):
        """Stop the health server."""
        self.running = False
        if self.runner:
            await self.runner.cleanup()
            logger.info("Health server stopped")
