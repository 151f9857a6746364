"""HTTP side channel for relay health monitoring."""

import logging
import time
from collections.abc import Callable

from aiohttp import web

from cdp_relay.config import RelayConfig

logger = logging.getLogger(__name__)


class RelayHTTPServer:
    """
    HTTP server for operational monitoring.

    Serves:
    - GET /health - attached y/n, configured ports, subscriber count
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        status_provider: Callable[[], dict] | None = None,
    ):
        self.config = config or RelayConfig()
        self._status_provider = status_provider
        self._start_time = time.time()
        self._runner: web.AppRunner | None = None

        self.app = web.Application()
        self._setup_routes()

        logger.info(f"RelayHTTPServer initialized (port={self.config.http_port})")

    def _setup_routes(self) -> None:
        """Configure HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)

    async def _handle_health(self, request: web.Request) -> web.Response:
        """
        Health check endpoint.

        Returns JSON with upstream state, ports and uptime.
        """
        status = self._status_provider() if self._status_provider else {}

        return web.json_response(
            {
                "ok": True,
                "attached": status.get("attached", False),
                "state": status.get("state", "DISCONNECTED"),
                "target": status.get("target"),
                "subscribers": status.get("subscribers", 0),
                "cdpPort": self.config.cdp_port,
                "wsPort": self.config.port,
                "httpPort": self.config.http_port,
                "uptime_seconds": round(time.time() - self._start_time, 2),
            }
        )

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """Start the HTTP server."""
        host = host or self.config.host
        port = self.config.http_port if port is None else port
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info(f"HTTP server running at http://{host}:{port} (health: GET /health)")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.info("HTTP server stopped")
