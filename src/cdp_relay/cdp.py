"""
Chrome DevTools Protocol client boundary.

The relay only depends on the two protocols below. ``PlaywrightCDPClient``
implements them on top of playwright's CDP session support.
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol

from playwright.async_api import Browser, CDPSession, Page, Playwright, async_playwright

from cdp_relay.errors import AttachError, TransportDisconnect
from cdp_relay.targets import TargetDescriptor, list_targets

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], None]


class InstrumentationHandle(Protocol):
    """One attached CDP session."""

    async def enable_network(
        self, max_total_buffer_size: int, max_resource_buffer_size: int
    ) -> None: ...

    async def enable_page(self) -> None: ...

    async def enable_runtime(self) -> None: ...

    async def enable_performance(self) -> None: ...

    async def get_metrics(self) -> dict[str, Any]: ...

    def on_network_response(self, callback: EventCallback) -> None: ...

    def on_network_finished(self, callback: EventCallback) -> None: ...

    def on_runtime_exception(self, callback: EventCallback) -> None: ...

    def on_disconnect(self, callback: Callable[[], None]) -> None: ...

    async def close(self) -> None: ...


class InstrumentationClient(Protocol):
    """Target discovery and attach."""

    async def list_targets(self, port: int) -> list[TargetDescriptor]: ...

    async def attach(self, port: int, target: TargetDescriptor) -> InstrumentationHandle: ...


class PlaywrightCDPHandle:
    """
    InstrumentationHandle backed by a playwright CDPSession.

    Disconnect fires once, when either the browser connection drops or the
    attached page closes (tab closed, renderer crashed).
    """

    def __init__(self, playwright: Playwright, browser: Browser, page: Page, session: CDPSession):
        self._playwright = playwright
        self._browser = browser
        self._page = page
        self._session = session
        self._disconnect_callbacks: list[Callable[[], None]] = []
        self._disconnected = False
        self._closed = False

        browser.on("disconnected", lambda _browser: self._fire_disconnect("browser disconnected"))
        page.on("close", lambda _page: self._fire_disconnect("page closed"))

    async def _send(self, method: str, params: dict | None = None) -> dict[str, Any]:
        if self._disconnected or self._closed:
            raise TransportDisconnect(f"{method}: CDP transport is gone")
        return await self._session.send(method, params)

    async def enable_network(self, max_total_buffer_size: int, max_resource_buffer_size: int) -> None:
        await self._send(
            "Network.enable",
            {
                "maxTotalBufferSize": max_total_buffer_size,
                "maxResourceBufferSize": max_resource_buffer_size,
            },
        )

    async def enable_page(self) -> None:
        await self._send("Page.enable")

    async def enable_runtime(self) -> None:
        await self._send("Runtime.enable")

    async def enable_performance(self) -> None:
        await self._send("Performance.enable")

    async def get_metrics(self) -> dict[str, Any]:
        return await self._send("Performance.getMetrics")

    def on_network_response(self, callback: EventCallback) -> None:
        self._session.on("Network.responseReceived", callback)

    def on_network_finished(self, callback: EventCallback) -> None:
        self._session.on("Network.loadingFinished", callback)

    def on_runtime_exception(self, callback: EventCallback) -> None:
        self._session.on("Runtime.exceptionThrown", callback)

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    def _fire_disconnect(self, reason: str) -> None:
        if self._disconnected or self._closed:
            return
        self._disconnected = True
        logger.debug(f"CDP transport dropped: {reason}")
        for callback in self._disconnect_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in disconnect callback: {e}")

    async def close(self) -> None:
        """Detach from the target and drop the connection (Chrome keeps running)."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._session.detach()
        except Exception as e:
            logger.debug(f"CDP session detach failed: {e}")
        try:
            await self._playwright.stop()
        except Exception as e:
            logger.debug(f"Playwright stop failed: {e}")


class PlaywrightCDPClient:
    """InstrumentationClient that attaches through ``connect_over_cdp``."""

    def __init__(self, host: str = "localhost", discovery_timeout: float = 5.0):
        self.host = host
        self.discovery_timeout = discovery_timeout

    async def list_targets(self, port: int) -> list[TargetDescriptor]:
        return await list_targets(port, host=self.host, timeout=self.discovery_timeout)

    async def attach(self, port: int, target: TargetDescriptor) -> PlaywrightCDPHandle:
        """
        Attach to ``target``.

        Raises:
            AttachError: if Chrome refuses the connection or the target is gone
        """
        playwright = await async_playwright().start()
        attached = False
        try:
            browser = await playwright.chromium.connect_over_cdp(f"http://{self.host}:{port}")
            found = await self._open_target_session(browser, target)
            if found is None:
                raise AttachError(f"Target no longer available: {target.label}")
            page, session = found
            attached = True
        except AttachError:
            raise
        except Exception as e:
            raise AttachError(f"CDP attach failed ({target.label}): {e}") from e
        finally:
            # Runs on cancellation too
            if not attached:
                await playwright.stop()

        return PlaywrightCDPHandle(playwright, browser, page, session)

    @staticmethod
    async def _open_target_session(
        browser: Browser, target: TargetDescriptor
    ) -> tuple[Page, CDPSession] | None:
        """Open a CDP session on the page whose target id is ``target.id``."""
        for context in browser.contexts:
            for page in [*context.pages, *context.background_pages]:
                session = await context.new_cdp_session(page)
                info = await session.send("Target.getTargetInfo")
                if (info.get("targetInfo") or {}).get("targetId") == target.id:
                    return page, session
                await session.detach()
        return None
