"""
DevTools target discovery and selection.

Chrome started with ``--remote-debugging-port`` lists its debuggable
targets at ``http://<host>:<port>/json/list``.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

import aiohttp

from cdp_relay.errors import AttachError

logger = logging.getLogger(__name__)

# Attaching to these is either refused by Chrome or useless for telemetry
INTERNAL_URL_PREFIXES = (
    "devtools://",
    "chrome://",
    "chrome-extension://",
    "chrome-untrusted://",
    "edge://",
    "about:",
)

PREFERRED_KINDS = ("page", "background")

_KIND_MAP = {
    "page": "page",
    "background_page": "background",
}


@dataclass(frozen=True)
class TargetDescriptor:
    """One attachable debug target."""

    id: str
    title: str = ""
    url: str = ""
    kind: str = "other"
    ws_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TargetDescriptor":
        """Create from a ``/json/list`` entry."""
        return cls(
            id=data.get("id", ""),
            title=data.get("title") or "",
            url=data.get("url") or "",
            kind=_KIND_MAP.get(data.get("type", ""), "other"),
            ws_url=data.get("webSocketDebuggerUrl"),
        )

    @property
    def label(self) -> str:
        return self.title or self.url or self.id


def is_internal_url(url: str) -> bool:
    """Check if URL belongs to the debugger UI or a browser-internal page."""
    return url.startswith(INTERNAL_URL_PREFIXES)


def select_target(candidates: Sequence[TargetDescriptor]) -> TargetDescriptor | None:
    """
    Pick the target to attach to.

    Prefers the first page/background target with a regular URL, falls back
    to the first candidate, and returns None when there are no candidates.
    """
    for target in candidates:
        if target.kind in PREFERRED_KINDS and target.url and not is_internal_url(target.url):
            return target
    return candidates[0] if candidates else None


async def list_targets(
    port: int = 9222,
    host: str = "localhost",
    timeout: float = 5.0,
    session: aiohttp.ClientSession | None = None,
) -> list[TargetDescriptor]:
    """
    Fetch debuggable targets from Chrome's DevTools HTTP endpoint.

    Raises:
        AttachError: if Chrome is unreachable or returns garbage
    """
    url = f"http://{host}:{port}/json/list"
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))

    try:
        async with session.get(url) as response:
            response.raise_for_status()
            entries = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise AttachError(f"Target discovery failed on {url}: {e}") from e
    finally:
        if owns_session:
            await session.close()

    if not isinstance(entries, list):
        raise AttachError(f"Unexpected /json/list payload from {url}")

    targets = [TargetDescriptor.from_dict(entry) for entry in entries if isinstance(entry, dict)]
    logger.debug(f"Discovered {len(targets)} targets on port {port}")
    return targets
