"""
Health check HTTP server for container orchestration.

GET /health answers 200 while the process is alive and embeds the RCON
session status, so a dashboard can tell "process up" from "server reachable".
"""
import time
from typing import Any, Dict, Optional

from aiohttp import web
import structlog

logger = structlog.get_logger()

SERVICE_NAME = "rust-rcon-console"


class HealthCheckServer:
    """aiohttp app exposing /health and a small index at /."""

    def __init__(self, host: str = "0.0.0.0", port: int = 8080, session: Optional[Any] = None):
        """
        Args:
            host: Bind address
            port: Bind port (0 picks a free port)
            session: RconSession whose status() is embedded in /health
        """
        self.host = host
        self.port = port
        self.session = session
        self.started_at = time.monotonic()
        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/", self.root_handler)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def snapshot(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": "healthy",
            "service": SERVICE_NAME,
            "uptime_seconds": int(time.monotonic() - self.started_at),
        }
        if self.session is not None:
            rcon = self.session.status()
            body["rcon"] = rcon
            # Process stays healthy; an RCON error is only reported
            body["degraded"] = rcon.get("state") == "error"
        return body

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.snapshot())

    async def root_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "service": SERVICE_NAME,
            "endpoints": {"health": "/health"},
        })

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info("health_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        site, self.site = self.site, None
        runner, self.runner = self.runner, None
        if site is not None:
            await site.stop()
        if runner is not None:
            await runner.cleanup()
        logger.info("health_server_stopped")
