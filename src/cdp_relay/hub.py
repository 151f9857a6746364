"""
Broadcast hub - subscriber registry and best-effort fan-out.

All registry mutations are synchronous and iterate a snapshot, so on the
single event loop no mutation is ever split across an await.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from cdp_relay.errors import SubscriberSendError
from cdp_relay.events import TelemetryEvent, serialize

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001


class SubscriberTransport(Protocol):
    """What the hub needs from a downstream socket."""

    @property
    def is_open(self) -> bool: ...

    def send(self, payload: str) -> bool:
        """Queue one text frame; False if dropped for backpressure. Raises on failure."""
        ...

    def ping(self) -> None:
        """Send a liveness probe without waiting for the answer."""
        ...

    def terminate(self) -> None:
        """Abort the connection immediately."""
        ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


@dataclass
class Subscriber:
    """One downstream connection."""

    id: str
    transport: SubscriberTransport
    is_alive: bool = True
    connected_at: float = field(default_factory=time.time)
    remote: str | None = None
    events_sent: int = 0
    events_dropped: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "remote": self.remote,
            "is_alive": self.is_alive,
            "connected_at": self.connected_at,
            "events_sent": self.events_sent,
            "events_dropped": self.events_dropped,
        }


@dataclass
class HubStats:
    """Statistics for the hub."""

    events_published: int = 0
    frames_sent: int = 0
    frames_dropped: int = 0
    clients_connected: int = 0
    clients_disconnected: int = 0
    send_failures: int = 0
    heartbeat_evictions: int = 0


class BroadcastHub:
    """
    Delivers every TelemetryEvent to every open subscriber.

    One failing subscriber is unregistered and terminated on the spot and
    never retried; the others are unaffected. Each subscriber sees events
    in publish() call order.

    Liveness is a two-tick heartbeat: each sweep terminates subscribers
    that did not answer the previous probe, then clears ``is_alive`` and
    probes the rest. Any pong sets ``is_alive`` back via mark_alive().
    """

    def __init__(self, heartbeat_interval: float = 15.0):
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: dict[str, Subscriber] = {}
        self._stats = HubStats()
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def subscriber_count(self) -> int:
        """Number of registered subscribers."""
        return len(self._subscribers)

    def get(self, subscriber_id: str) -> Subscriber | None:
        return self._subscribers.get(subscriber_id)

    def __contains__(self, subscriber_id: str) -> bool:
        return subscriber_id in self._subscribers

    # =========================================================================
    # Registry
    # =========================================================================

    def register(self, transport: SubscriberTransport, remote: str | None = None) -> Subscriber:
        """Add a subscriber for ``transport`` with is_alive=True."""
        subscriber = Subscriber(id=uuid.uuid4().hex[:12], transport=transport, remote=remote)
        self._subscribers[subscriber.id] = subscriber
        self._stats.clients_connected += 1
        logger.info(f"Subscriber {subscriber.id} connected from {remote} (count={self.subscriber_count})")
        return subscriber

    def unregister(self, subscriber_id: str) -> bool:
        """
        Remove a subscriber. Idempotent.

        Returns:
            True if the subscriber was registered
        """
        if self._subscribers.pop(subscriber_id, None) is None:
            return False
        self._stats.clients_disconnected += 1
        logger.info(f"Subscriber {subscriber_id} disconnected (count={self.subscriber_count})")
        return True

    def evict(self, subscriber_id: str, reason: str = "") -> bool:
        """Unregister a subscriber and abort its transport."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return False
        self._evict(subscriber, reason)
        return True

    def _evict(self, subscriber: Subscriber, reason: str) -> None:
        if reason:
            logger.warning(f"Evicting subscriber {subscriber.id}: {reason}")
        self.unregister(subscriber.id)
        try:
            subscriber.transport.terminate()
        except Exception as e:
            logger.error(f"Error terminating subscriber {subscriber.id}: {e}")

    def mark_alive(self, subscriber_id: str) -> None:
        """Record a liveness response (pong) from a subscriber."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is not None:
            subscriber.is_alive = True

    # =========================================================================
    # Fan-out
    # =========================================================================

    def publish(self, event: TelemetryEvent) -> int:
        """
        Serialize ``event`` once and hand it to every open subscriber.

        Never raises.

        Returns:
            Number of subscribers the frame was queued for
        """
        self._stats.events_published += 1
        if not self._subscribers:
            return 0

        payload = serialize(event)
        delivered = 0

        for subscriber in list(self._subscribers.values()):
            if not subscriber.transport.is_open:
                self._evict(subscriber, "socket not open")
                continue

            try:
                queued = subscriber.transport.send(payload)
            except Exception as e:
                self._stats.send_failures += 1
                error = SubscriberSendError(str(e) or type(e).__name__, subscriber.id)
                self._evict(subscriber, str(error))
                continue

            if queued is False:
                subscriber.events_dropped += 1
                self._stats.frames_dropped += 1
                continue

            subscriber.events_sent += 1
            delivered += 1

        self._stats.frames_sent += delivered
        logger.debug(f"Published {event.kind} to {delivered} subscribers")
        return delivered

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def heartbeat_sweep(self) -> None:
        """Terminate silent subscribers and probe the rest."""
        for subscriber in list(self._subscribers.values()):
            if not subscriber.is_alive:
                self._stats.heartbeat_evictions += 1
                self._evict(subscriber, "missed heartbeat")
                continue

            subscriber.is_alive = False
            try:
                subscriber.transport.ping()
            except Exception as e:
                # No pong will arrive; the next sweep evicts it
                logger.debug(f"Heartbeat probe to {subscriber.id} failed: {e}")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.heartbeat_sweep()

    def start_heartbeat(self) -> None:
        """Start the periodic heartbeat sweep."""
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info(f"Heartbeat sweep every {self.heartbeat_interval:.0f}s")

    async def stop_heartbeat(self) -> None:
        """Cancel the heartbeat sweep."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    # =========================================================================
    # Shutdown / stats
    # =========================================================================

    async def close_all(self, code: int = GOING_AWAY, reason: str = "Server shutdown") -> None:
        """Close every subscriber and empty the registry."""
        subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            self.unregister(subscriber.id)

        results = await asyncio.gather(
            *[subscriber.transport.close(code, reason) for subscriber in subscribers],
            return_exceptions=True,
        )
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, Exception):
                logger.debug(f"Close of {subscriber.id} failed ({result}), terminating")
                try:
                    subscriber.transport.terminate()
                except Exception as e:
                    logger.error(f"Error terminating subscriber {subscriber.id}: {e}")

    def get_stats(self) -> dict:
        """Get hub statistics."""
        return {
            "subscriber_count": self.subscriber_count,
            "heartbeat_running": self.heartbeat_running,
            "events_published": self._stats.events_published,
            "frames_sent": self._stats.frames_sent,
            "frames_dropped": self._stats.frames_dropped,
            "clients_connected": self._stats.clients_connected,
            "clients_disconnected": self._stats.clients_disconnected,
            "send_failures": self._stats.send_failures,
            "heartbeat_evictions": self._stats.heartbeat_evictions,
        }
