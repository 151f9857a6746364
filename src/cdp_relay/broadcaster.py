"""
WebSocket server for relay viewers.

Accepts authorized upgrades, registers each connection with the
BroadcastHub and answers application-level pings. Protocol is
unidirectional (server -> client) apart from ``{"type": "ping"}``.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from http import HTTPStatus

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response
from websockets.protocol import State

from cdp_relay.auth import authorize_upgrade
from cdp_relay.errors import AuthorizationError, SubscriberSendError
from cdp_relay.hub import NORMAL_CLOSURE, BroadcastHub

logger = logging.getLogger(__name__)


def format_remote(address) -> str:
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else "unknown"


class WebSocketTransport:
    """
    SubscriberTransport over a websockets server connection.

    Frames go through a bounded outbox drained by one writer task, so
    send() never waits on the socket and per-subscriber order is kept.
    A full outbox drops the frame.
    """

    def __init__(self, connection: ServerConnection, max_queue: int = 256):
        self._connection = connection
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        self._writer: asyncio.Task | None = None
        self._probes: set[asyncio.Task] = set()

        # Wired by the server once the subscriber is registered
        self.on_pong: Callable[[], None] | None = None
        self.on_failure: Callable[[Exception], None] | None = None

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, payload: str) -> bool:
        if not self.is_open:
            raise SubscriberSendError("socket not open")
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    async def _drain(self) -> None:
        try:
            while True:
                payload = await self._outbox.get()
                await self._connection.send(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.on_failure:
                self.on_failure(e)

    def ping(self) -> None:
        if not self.is_open:
            raise SubscriberSendError("socket not open")
        task = asyncio.create_task(self._probe())
        self._probes.add(task)
        task.add_done_callback(self._probes.discard)

    async def _probe(self) -> None:
        try:
            pong_waiter = await self._connection.ping()
            await pong_waiter
        except (ConnectionClosed, RuntimeError) as e:
            logger.debug(f"Ping failed: {e}")
            return
        if self.on_pong:
            self.on_pong()

    def terminate(self) -> None:
        self.release()
        transport = getattr(self._connection, "transport", None)
        if transport is not None:
            transport.abort()

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        self.release()
        await self._connection.close(code, reason)

    def release(self) -> None:
        """Stop the writer and any pending probes."""
        current = asyncio.current_task()
        if self._writer is not None and self._writer is not current:
            self._writer.cancel()
        for task in list(self._probes):
            task.cancel()


class WebSocketBroadcaster:
    """
    WebSocket server that feeds connected viewers from the BroadcastHub.

    Upgrades are checked against the allowed origin and shared secret and
    rejected with HTTP 401 before any subscriber exists. Heartbeats are the
    hub's job, so the library's own keepalive pings are disabled.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        host: str = "localhost",
        port: int = 8080,
        allowed_origin: str = "",
        shared_secret: str = "",
        queue_size: int = 256,
    ):
        self.hub = hub
        self.host = host
        self.port = port
        self.allowed_origin = allowed_origin
        self.shared_secret = shared_secret
        self.queue_size = queue_size
        self._server: Server | None = None
        self._rejected = 0

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int | None:
        """Actual listening port (useful when started with port=0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Start listening for viewer connections."""
        self._server = await websockets.serve(
            self._handle_client,
            self.host,
            self.port,
            process_request=self._process_request,
            ping_interval=None,
        )
        logger.info(f"WebSocket broadcaster listening on ws://{self.host}:{self.bound_port}")

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("WebSocket broadcaster stopped")

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        """Reject unauthorized upgrades with 401 before the handshake completes."""
        origin = request.headers.get("Origin")
        try:
            authorize_upgrade(origin, request.path, self.allowed_origin, self.shared_secret)
        except AuthorizationError as e:
            self._rejected += 1
            logger.warning(
                f"WS rejected: remote={format_remote(connection.remote_address)} "
                f"origin={origin} ({e})"
            )
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Unauthorized\n")
        return None

    async def _handle_client(self, connection: ServerConnection) -> None:
        """Handle a connected viewer for its whole lifetime."""
        transport = WebSocketTransport(connection, max_queue=self.queue_size)
        subscriber = self.hub.register(transport, remote=format_remote(connection.remote_address))
        transport.on_pong = lambda: self.hub.mark_alive(subscriber.id)
        transport.on_failure = lambda e: self.hub.evict(subscriber.id, f"send failed: {e}")
        transport.start()

        try:
            async for message in connection:
                self._handle_message(subscriber.id, transport, message)
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.warning(f"Subscriber {subscriber.id} error: {e}")
            self.hub.evict(subscriber.id, str(e))
        finally:
            self.hub.unregister(subscriber.id)
            transport.release()

    def _handle_message(self, subscriber_id: str, transport: WebSocketTransport, message) -> None:
        """Answer {"type": "ping"} frames; anything else is ignored."""
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError):
            return
        if not isinstance(data, dict) or data.get("type") != "ping":
            return

        self.hub.mark_alive(subscriber_id)
        if transport.is_open:
            transport.send(json.dumps({"type": "pong", "t": data.get("t")}))

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "is_running": self.is_running,
            "port": self.bound_port or self.port,
            "rejected_upgrades": self._rejected,
        }
