# src/cdp_relay/runner.py
"""Relay runner - wires the upstream session into the hub and owns shutdown."""

import asyncio
import logging
import signal
import sys

from cdp_relay.broadcaster import WebSocketBroadcaster
from cdp_relay.cdp import InstrumentationClient, PlaywrightCDPClient
from cdp_relay.config import RelayConfig
from cdp_relay.errors import FatalStartupError
from cdp_relay.http_server import RelayHTTPServer
from cdp_relay.hub import GOING_AWAY, BroadcastHub
from cdp_relay.logger import setup_logging
from cdp_relay.session import UpstreamSession

logger = logging.getLogger(__name__)


class RelayRunner:
    """
    Main entry point for running the relay.

    Orchestrates:
    - WebSocketBroadcaster + BroadcastHub (viewer fan-out, heartbeat)
    - RelayHTTPServer (health)
    - UpstreamSession (Chrome attach/reattach)

    Viewers may connect before Chrome is attached; they simply receive
    nothing until the first attach succeeds.

    Usage:
        runner = RelayRunner()
        exit_code = await runner.start()  # Runs until shutdown
    """

    def __init__(self, config: RelayConfig | None = None, client: InstrumentationClient | None = None):
        self.config = config or RelayConfig()
        self.config.validate()

        self.shutdown_event = asyncio.Event()
        self.exit_code = 0

        self.hub = BroadcastHub(heartbeat_interval=self.config.heartbeat_interval)
        self.broadcaster = WebSocketBroadcaster(
            self.hub,
            host=self.config.host,
            port=self.config.port,
            allowed_origin=self.config.allowed_origin,
            shared_secret=self.config.shared_secret,
            queue_size=self.config.subscriber_queue_size,
        )
        self.session = UpstreamSession(
            client or PlaywrightCDPClient(host=self.config.cdp_host),
            sink=self.hub.publish,
            port=self.config.cdp_port,
            base_delay=self.config.base_delay,
            max_attempts=self.config.max_retry_attempts,
            max_delay=self.config.max_delay,
            metrics_interval=self.config.metrics_interval,
            network_buffer_bytes=self.config.network_buffer_bytes,
            shutdown_event=self.shutdown_event,
            on_fatal=self._on_fatal,
        )
        self.http_server = RelayHTTPServer(self.config, status_provider=self.get_health)

        self._stopped = asyncio.Event()
        self._shutdown_task: asyncio.Task | None = None

        logger.info("RelayRunner initialized")

    @property
    def shutting_down(self) -> bool:
        return self.shutdown_event.is_set()

    async def start(self) -> int:
        """
        Start all relay components.

        Runs until shutdown (signal, fatal upstream condition, uncaught error).

        Returns:
            Process exit code
        """
        logger.info("Starting CDP relay...")
        logger.info(f"  WebSocket: {self.config.ws_url}")
        logger.info(f"  HTTP:      {self.config.health_url}")
        logger.info(f"  CDP:       {self.config.cdp_host}:{self.config.cdp_port}")

        try:
            await self.broadcaster.start()
            await self.http_server.start()
        except OSError as e:
            logger.critical(f"Failed to start listeners: {e}")
            await self.shutdown(1)
            return self.exit_code

        self.hub.start_heartbeat()
        self._install_handlers()

        # Independent of the listeners: Chrome may come up later
        self.session.start("initial")

        logger.info("Relay running. Press Ctrl+C to stop.")
        await self._stopped.wait()
        return self.exit_code

    def _install_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown, 0)
        loop.set_exception_handler(self._handle_loop_exception)

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Schedule shutdown from a synchronous callback (signal, fatal, error)."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self.shutdown(exit_code))

    def _on_fatal(self, error: FatalStartupError) -> None:
        logger.critical(f"Fatal upstream condition: {error}")
        self.request_shutdown(1)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exception = context.get("exception")
        logger.error(f"Uncaught error: {context.get('message')}", exc_info=exception)
        self.request_shutdown(1)

    async def shutdown(self, exit_code: int = 0) -> None:
        """
        Stop everything in order. Idempotent.

        1. Raise the shutdown flag (suppresses reattach)
        2. Close the upstream session
        3. Close every subscriber with 1001
        4. Stop the heartbeat sweep
        5. Stop both servers
        """
        if self.shutting_down:
            return

        self.shutdown_event.set()
        self.exit_code = exit_code
        logger.info(f"Shutting down (exit code {exit_code})...")

        try:
            await self.session.close()
            await self.hub.close_all(GOING_AWAY, "Server shutdown")
            await self.hub.stop_heartbeat()
            await self.broadcaster.stop()
            await self.http_server.stop()
        finally:
            self._stopped.set()
            logger.info("Relay stopped")

    def get_health(self) -> dict:
        """Summary for the /health endpoint."""
        return {
            "attached": self.session.is_attached,
            "state": self.session.state.status.value,
            "target": self.session.target.label if self.session.target else None,
            "subscribers": self.hub.subscriber_count,
        }

    def get_status(self) -> dict:
        """Get combined status of all components."""
        return {
            "shutting_down": self.shutting_down,
            "session": self.session.get_status(),
            "hub": self.hub.get_stats(),
            "broadcaster": self.broadcaster.get_stats(),
        }


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Chrome DevTools telemetry relay")
    parser.add_argument("--port", type=int, help="WebSocket port")
    parser.add_argument("--http-port", type=int, help="HTTP health port")
    parser.add_argument("--cdp-port", type=int, help="Chrome remote debugging port")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    args = parser.parse_args()

    config = RelayConfig()
    if args.port is not None:
        config.port = args.port
    if args.http_port is not None:
        config.http_port = args.http_port
    if args.cdp_port is not None:
        config.cdp_port = args.cdp_port
    if args.log_level:
        config.log_level = args.log_level.upper()

    setup_logging(config.log_level, json_logs=config.log_json)

    async def run() -> int:
        runner = RelayRunner(config)
        return await runner.start()

    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
