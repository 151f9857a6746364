"""
Upstream CDP session.

Keeps exactly one instrumentation session alive against one Chrome target,
re-attaching with exponential backoff, and turns raw domain callbacks into
TelemetryEvent values pushed to a single sink.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from cdp_relay.cdp import InstrumentationClient, InstrumentationHandle
from cdp_relay.connection import ConnectionState
from cdp_relay.errors import AttachError, FatalStartupError, TransportDisconnect
from cdp_relay.events import (
    NetworkRequestFinished,
    NetworkRequestStarted,
    PerformanceSample,
    RuntimeException,
    TelemetryEvent,
)
from cdp_relay.targets import TargetDescriptor, select_target

logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    """Statistics for the upstream session."""

    attach_count: int = 0
    attach_failures: int = 0
    disconnects: int = 0
    events_emitted: int = 0
    events_stale: int = 0
    metrics_skipped: int = 0


class UpstreamSession:
    """
    Owns the single upstream CDP connection.

    Retry state machine:
        DISCONNECTED -> CONNECTING(n) -> ATTACHED
        CONNECTING(n) -> CONNECTING(n+1)   after base_delay * 2^(n-1)
        CONNECTING(max_attempts) failed -> fatal (reported once)

    A disconnect of an attached session restarts at attempt 1 with no delay.
    Every attach bumps the connection generation; callbacks from an older
    generation are dropped so a superseded handle never leaks events.

    Usage:
        session = UpstreamSession(PlaywrightCDPClient(), sink=hub.publish)
        session.start()
        ...
        await session.close()
    """

    def __init__(
        self,
        client: InstrumentationClient,
        sink: Callable[[TelemetryEvent], Any],
        port: int = 9222,
        base_delay: float = 1.0,
        max_attempts: int = 5,
        max_delay: float | None = None,
        metrics_interval: float = 1.0,
        network_buffer_bytes: int = 65536,
        shutdown_event: asyncio.Event | None = None,
        on_fatal: Callable[[FatalStartupError], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize session.

        Args:
            client: CDP client used for discovery and attach
            sink: Receives every TelemetryEvent, in emission order
            port: Chrome remote debugging port
            base_delay: Backoff delay after the first failed attempt (seconds)
            max_attempts: Consecutive failures before giving up
            max_delay: Optional cap on the backoff delay (seconds)
            metrics_interval: Nominal Performance.getMetrics cadence (seconds)
            network_buffer_bytes: Network domain total/per-resource buffer size
            shutdown_event: Process-wide shutdown flag, suppresses reattach when set
            on_fatal: Called once when max_attempts is exhausted
            sleep: Backoff sleep (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.client = client
        self.port = port
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.max_delay = max_delay
        self.metrics_interval = metrics_interval
        self.network_buffer_bytes = network_buffer_bytes

        self.state = ConnectionState()
        self.target: TargetDescriptor | None = None

        self._sink = sink
        self._shutdown = shutdown_event or asyncio.Event()
        self._on_fatal = on_fatal
        self._sleep = sleep

        self._handle: InstrumentationHandle | None = None
        self._task: asyncio.Task | None = None
        self._metrics_task: asyncio.Task | None = None
        self._closed = False
        self._fatal_reported = False
        self._stats = SessionStats()

    @property
    def is_attached(self) -> bool:
        return self.state.is_attached

    @property
    def shutting_down(self) -> bool:
        return self._closed or self._shutdown.is_set()

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-indexed)."""
        delay = self.base_delay * 2 ** (attempt - 1)
        if self.max_delay:
            delay = min(delay, self.max_delay)
        return delay

    # =========================================================================
    # Attach / retry
    # =========================================================================

    def start(self, label: str = "initial") -> asyncio.Task:
        """Launch an attach sequence in the background, superseding any running one."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.create_task(self.attach_with_retry(label))
        return self._task

    async def attach_with_retry(self, label: str = "initial") -> bool:
        """
        Attach, retrying with exponential backoff.

        Returns:
            True once attached, False if shutting down or attempts are exhausted
        """
        attempt = 0
        while not self.shutting_down:
            attempt += 1
            self.state.set_connecting(attempt)
            try:
                if await self._attach_once(label):
                    return True
                return False
            except AttachError as e:
                self._stats.attach_failures += 1
                self.state.set_failed(str(e))
                logger.error(f"CDP connect failed (attempt {attempt}/{self.max_attempts}): {e}")

                if attempt >= self.max_attempts:
                    self.state.set_disconnected()
                    self._report_fatal(
                        FatalStartupError(
                            f"Exceeded {self.max_attempts} attach attempts. Ensure Chrome runs "
                            f"with --remote-debugging-port={self.port}"
                        )
                    )
                    return False

                delay = self.backoff_delay(attempt)
                logger.info(f"Retrying CDP attach in {delay:.1f}s")
                await self._sleep(delay)

        return False

    async def _attach_once(self, label: str) -> bool:
        await self._supersede_current()

        try:
            targets = await self.client.list_targets(self.port)
        except AttachError:
            raise
        except Exception as e:
            raise AttachError(f"Target discovery failed: {e}") from e

        target = select_target(targets)
        if target is None:
            raise AttachError("No debuggable targets found")

        logger.info(f"Attaching to target ({label}): {target.label}")

        try:
            handle = await self.client.attach(self.port, target)
        except AttachError:
            raise
        except Exception as e:
            raise AttachError(f"Attach to {target.label} failed: {e}") from e

        try:
            await self.activate_domains(handle)
        except (AttachError, asyncio.CancelledError):
            await self._close_handle(handle)
            raise

        if self.shutting_down:
            await self._close_handle(handle)
            return False

        self._handle = handle
        self.target = target
        generation = self.state.set_attached(handle, target.title, target.url)
        self._stats.attach_count += 1

        handle.on_disconnect(lambda: self._handle_disconnect(generation))
        self._register_listeners(handle, generation)
        self._metrics_task = asyncio.create_task(self._metrics_loop(handle, generation))

        logger.info(f"CDP attached ({label}) to {target.label} on port {self.port}")
        return True

    async def activate_domains(self, handle: InstrumentationHandle) -> None:
        """
        Enable Network, Page, Runtime and Performance on ``handle``.

        Raises:
            AttachError: if any domain fails to enable
        """
        try:
            await asyncio.gather(
                handle.enable_network(
                    max_total_buffer_size=self.network_buffer_bytes,
                    max_resource_buffer_size=self.network_buffer_bytes,
                ),
                handle.enable_page(),
                handle.enable_runtime(),
                handle.enable_performance(),
            )
        except Exception as e:
            raise AttachError(f"Domain activation failed: {e}") from e

    def _report_fatal(self, error: FatalStartupError) -> None:
        if self._fatal_reported:
            return
        self._fatal_reported = True
        logger.critical(str(error))
        if self._on_fatal:
            self._on_fatal(error)

    # =========================================================================
    # Disconnect
    # =========================================================================

    def _handle_disconnect(self, generation: int) -> None:
        """One-shot transport drop notification for ``generation``."""
        if not self.state.is_current(generation):
            return

        self._stats.disconnects += 1
        self.state.set_disconnected()

        if self.shutting_down:
            return

        logger.warning("CDP disconnected. Reconnecting...")
        self.start("reconnect")

    async def _supersede_current(self) -> None:
        """Close the previous handle before a new attach attempt."""
        handle, self._handle = self._handle, None
        if self.state.is_attached:
            self.state.set_disconnected()
        if handle is not None:
            await self._close_handle(handle)

    async def _close_handle(self, handle: InstrumentationHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.debug(f"Error closing CDP handle: {e}")

    # =========================================================================
    # Event listeners
    # =========================================================================

    def _register_listeners(self, handle: InstrumentationHandle, generation: int) -> None:
        handle.on_network_response(self._listener(generation, NetworkRequestStarted.from_cdp))
        handle.on_network_finished(self._listener(generation, NetworkRequestFinished.from_cdp))
        handle.on_runtime_exception(self._listener(generation, RuntimeException.from_cdp))

    def _listener(
        self, generation: int, factory: Callable[[dict], TelemetryEvent]
    ) -> Callable[[dict], None]:
        def callback(params: dict) -> None:
            if not self.state.is_current(generation):
                self._stats.events_stale += 1
                return
            try:
                event = factory(params or {})
            except Exception as e:
                logger.warning(f"Malformed CDP event params for {factory.__qualname__}: {e}")
                return
            self._emit(generation, event)

        return callback

    def _emit(self, generation: int, event: TelemetryEvent) -> None:
        if not self.state.is_current(generation):
            self._stats.events_stale += 1
            return

        self._stats.events_emitted += 1
        try:
            self._sink(event)
        except Exception as e:
            logger.error(f"Event sink error: {e}")

    def _is_live(self, generation: int) -> bool:
        return not self.shutting_down and self.state.is_current(generation)

    async def _metrics_loop(self, handle: InstrumentationHandle, generation: int) -> None:
        """Sample Performance.getMetrics; each tick schedules the next only after it completes."""
        while self._is_live(generation):
            try:
                sample = PerformanceSample.from_cdp(await handle.get_metrics())
            except TransportDisconnect:
                break
            except Exception as e:
                # Tab navigating, briefly busy, or a malformed result; not a disconnect
                self._stats.metrics_skipped += 1
                logger.debug(f"Performance metrics unavailable: {e}")
            else:
                self._emit(generation, sample)

            if not self._is_live(generation):
                break
            await asyncio.sleep(self.metrics_interval)

    # =========================================================================
    # Shutdown / status
    # =========================================================================

    async def close(self) -> None:
        """Stop retrying, stop sampling and close the attached handle."""
        self._closed = True

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        metrics_task, self._metrics_task = self._metrics_task, None
        if metrics_task is not None and not metrics_task.done():
            metrics_task.cancel()
            try:
                await metrics_task
            except asyncio.CancelledError:
                pass

        await self._supersede_current()
        logger.info("Upstream session closed")

    def get_stats(self) -> dict:
        """Get session statistics."""
        return {
            "attach_count": self._stats.attach_count,
            "attach_failures": self._stats.attach_failures,
            "disconnects": self._stats.disconnects,
            "events_emitted": self._stats.events_emitted,
            "events_stale": self._stats.events_stale,
            "metrics_skipped": self._stats.metrics_skipped,
        }

    def get_status(self) -> dict:
        """Get complete session status."""
        return {
            "attached": self.is_attached,
            "connection": self.state.to_dict(),
            "target": self.target.label if self.target else None,
            "stats": self.get_stats(),
        }
